"""Tests for ArtifactBuilder — building, inspecting and running .pyz artifacts."""

from __future__ import annotations

import json
import subprocess
import sys
import textwrap
import zipfile
from pathlib import Path

import pytest

from clusterdeck.core.errors import BuildError, NotFoundError
from clusterdeck.execution.packaging import (
    ENTRY_POINT_ENV,
    EXIT_ENTRY_POINT,
    EXIT_RESOURCES,
    EXIT_RUNTIME_ERROR,
    MANIFEST_NAME,
    RESULT_FILE_ENV,
    ArtifactBuilder,
    build_artifact,
)


@pytest.fixture
def builder() -> ArtifactBuilder:
    return ArtifactBuilder()


def _run(archive: Path, *args: str, env: dict | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(archive), *args],
        capture_output=True,
        text=True,
        timeout=60,
        env=env,
    )


# ── Build ────────────────────────────────────────────────────────


class TestBuild:
    @pytest.mark.parametrize("entry_point", ["wordcount.job:main", "wordcount.job", "wordcount.job:crash"])
    def test_manifest_entry_point_equals_input(self, builder, lesson_dir, tmp_path, entry_point):
        path, manifest = builder.build(entry_point, [lesson_dir / "wordcount"], tmp_path / "out" / "wc.pyz")
        assert manifest.entry_point == entry_point
        assert builder.inspect(path).entry_point == entry_point

    def test_manifest_contents(self, builder, lesson_dir, tmp_path):
        path, manifest = builder.build(
            "wordcount.job:main", [lesson_dir / "wordcount"], tmp_path / "wc", args=["a", "b"]
        )
        assert path.suffix == ".pyz"
        assert manifest.name == "wc"
        assert manifest.args == ["a", "b"]
        assert manifest.modules == ["wordcount", "wordcount.job", "wordcount.text"]
        assert len(manifest.sha256) == 64

    def test_surrounding_whitespace_is_stripped(self, builder, lesson_dir, tmp_path):
        path, manifest = builder.build(" wordcount.job:main\n", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        assert manifest.entry_point == "wordcount.job:main"
        assert builder.inspect(path).entry_point == "wordcount.job:main"
        with zipfile.ZipFile(path) as zf:
            assert "'wordcount.job:main'" in zf.read("__main__.py").decode()

        out = tmp_path / "out"
        result = _run(path, str(lesson_dir / "in"), str(out))
        assert result.returncode == 0, result.stderr
        assert (out / "counts.json").exists()

        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
        assert {"__main__.py", MANIFEST_NAME, "wordcount/job.py", "wordcount/text.py"} <= names

    def test_plain_directory_is_bundled_at_root(self, builder, tmp_path):
        src = tmp_path / "flat"
        src.mkdir()
        (src / "job.py").write_text("import helper\n\ndef main():\n    return helper.VALUE\n")
        (src / "helper.py").write_text("VALUE = 1\n")
        _, manifest = builder.build("job", [src], tmp_path / "flat.pyz")
        assert manifest.modules == ["helper", "job"]

    def test_single_file_unit(self, builder, tmp_path):
        script = tmp_path / "solo.py"
        script.write_text("def main():\n    print('solo')\n")
        path, _ = builder.build("solo", [script], tmp_path / "solo.pyz")
        result = _run(path)
        assert result.returncode == 0
        assert result.stdout.strip() == "solo"

    def test_build_is_deterministic_in_digest(self, builder, lesson_dir, tmp_path):
        _, first = builder.build("wordcount.job", [lesson_dir / "wordcount"], tmp_path / "a.pyz")
        _, second = builder.build("wordcount.job", [lesson_dir / "wordcount"], tmp_path / "b.pyz")
        assert first.sha256 == second.sha256

    def test_build_artifact_helper(self, lesson_dir, tmp_path):
        path, manifest = build_artifact("wordcount.job:main", [lesson_dir / "wordcount"], tmp_path / "h.pyz")
        assert path.exists()
        assert manifest.entry_point == "wordcount.job:main"


class TestBuildErrors:
    @pytest.mark.parametrize("entry_point", ["", "wordcount.job:", "wordcount/job.py", ":main"])
    def test_malformed_entry_point(self, builder, lesson_dir, tmp_path, entry_point):
        with pytest.raises(BuildError):
            builder.build(entry_point, [lesson_dir / "wordcount"], tmp_path / "x.pyz")
        assert not (tmp_path / "x.pyz").exists()

    def test_missing_entry_module(self, builder, lesson_dir, tmp_path):
        with pytest.raises(BuildError, match="not part of the bundled sources"):
            builder.build("wordcount.nope:main", [lesson_dir / "wordcount"], tmp_path / "x.pyz")

    def test_missing_entry_function(self, builder, lesson_dir, tmp_path):
        with pytest.raises(BuildError, match="not found"):
            builder.build("wordcount.job:absent", [lesson_dir / "wordcount"], tmp_path / "x.pyz")

    def test_coroutine_entry_rejected(self, builder, tmp_path):
        script = tmp_path / "aio.py"
        script.write_text("async def main():\n    pass\n")
        with pytest.raises(BuildError, match="coroutine"):
            builder.build("aio", [script], tmp_path / "x.pyz")

    def test_bad_signature_rejected(self, builder, tmp_path):
        script = tmp_path / "sig.py"
        script.write_text("def main(a, b):\n    pass\n")
        with pytest.raises(BuildError, match="single argv"):
            builder.build("sig", [script], tmp_path / "x.pyz")

    def test_unresolved_imports_listed(self, builder, tmp_path):
        script = tmp_path / "deps.py"
        script.write_text(
            textwrap.dedent("""\
                import json
                import clusterdeck_no_such_dependency
                from . import sibling

                def main():
                    pass
            """)
        )
        with pytest.raises(BuildError) as excinfo:
            builder.build("deps", [script], tmp_path / "x.pyz")
        assert "clusterdeck_no_such_dependency" in excinfo.value.unresolved
        assert any("sibling" in name for name in excinfo.value.unresolved)
        assert not (tmp_path / "x.pyz").exists()

    def test_optional_imports_ignored(self, builder, tmp_path):
        script = tmp_path / "opt.py"
        script.write_text(
            textwrap.dedent("""\
                try:
                    import clusterdeck_no_such_dependency
                except ImportError:
                    clusterdeck_no_such_dependency = None

                def main():
                    pass
            """)
        )
        builder.build("opt", [script], tmp_path / "x.pyz")

    def test_missing_source_unit(self, builder, tmp_path):
        with pytest.raises(BuildError):
            builder.build("job", [tmp_path / "missing"], tmp_path / "x.pyz")

    def test_top_level_main_rejected(self, builder, tmp_path):
        src = tmp_path / "flat"
        src.mkdir()
        (src / "__main__.py").write_text("")
        (src / "job.py").write_text("def main():\n    pass\n")
        with pytest.raises(BuildError, match="__main__"):
            builder.build("job", [src], tmp_path / "x.pyz")

    def test_syntax_error(self, builder, tmp_path):
        script = tmp_path / "broken.py"
        script.write_text("def main(:\n")
        with pytest.raises(BuildError, match="Syntax error"):
            builder.build("broken", [script], tmp_path / "x.pyz")


# ── Inspect / unpack ─────────────────────────────────────────────


class TestInspect:
    def test_missing_archive(self, builder, tmp_path):
        with pytest.raises(NotFoundError):
            builder.inspect(tmp_path / "nope.pyz")

    def test_foreign_archive(self, builder, tmp_path):
        archive = tmp_path / "foreign.pyz"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("__main__.py", "print('hi')")
        with pytest.raises(BuildError):
            builder.inspect(archive)

    def test_unpack(self, builder, lesson_dir, tmp_path):
        path, _ = builder.build("wordcount.job", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        dest = builder.unpack(path, tmp_path / "unpacked")
        assert (dest / "wordcount" / "job.py").is_file()
        assert json.loads((dest / MANIFEST_NAME).read_text())["entry_point"] == "wordcount.job"


# ── Execution ────────────────────────────────────────────────────


class TestArtifactExecution:
    def test_runs_entry_point_with_args(self, builder, lesson_dir, tmp_path):
        path, _ = builder.build("wordcount.job:main", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        out = tmp_path / "out"
        result_file = tmp_path / "result.json"
        env = {"PATH": "/usr/bin:/bin", RESULT_FILE_ENV: str(result_file)}

        result = _run(path, str(lesson_dir / "in"), str(out), env=env)

        assert result.returncode == 0, result.stderr
        assert "counted 7 words" in result.stdout
        assert json.loads((out / "counts.json").read_text())["the"] == 2
        assert json.loads(result_file.read_text()) == {"output_location": str(out)}

    def test_baked_args_come_first(self, builder, lesson_dir, tmp_path):
        out = tmp_path / "out"
        path, _ = builder.build(
            "wordcount.job:main", [lesson_dir / "wordcount"], tmp_path / "wc.pyz", args=[str(lesson_dir / "in")]
        )
        assert _run(path, str(out)).returncode == 0
        assert (out / "counts.json").exists()

    def test_runtime_error_exit_code(self, builder, lesson_dir, tmp_path):
        path, _ = builder.build("wordcount.job:crash", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        result = _run(path)
        assert result.returncode == EXIT_RUNTIME_ERROR
        assert "lesson blew up" in result.stderr

    def test_memory_error_exit_code(self, builder, lesson_dir, tmp_path):
        path, _ = builder.build("wordcount.job:oom", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        assert _run(path).returncode == EXIT_RESOURCES

    def test_unresolvable_entry_point_exit_code(self, builder, tmp_path):
        script = tmp_path / "lazy.py"
        script.write_text("from json import loads as main\n")
        path, _ = builder.build("lazy:main", [script], tmp_path / "lazy.pyz")
        with zipfile.ZipFile(path) as zf:
            main_src = zf.read("__main__.py").decode()
        tampered = tmp_path / "tampered.pyz"
        with zipfile.ZipFile(tampered, "w") as zf:
            zf.writestr("__main__.py", main_src.replace("'lazy:main'", "'lazy:gone'"))
            zf.write(script, "lazy.py")
        assert _run(tampered).returncode == EXIT_ENTRY_POINT

    def test_entry_point_from_environment_overrides_baked_one(self, builder, lesson_dir, tmp_path):
        path, _ = builder.build("wordcount.job:main", [lesson_dir / "wordcount"], tmp_path / "wc.pyz")
        env = {"PATH": "/usr/bin:/bin", ENTRY_POINT_ENV: " wordcount.job:crash "}

        result = _run(path, env=env)

        assert result.returncode == EXIT_RUNTIME_ERROR
        assert "lesson blew up" in result.stderr
