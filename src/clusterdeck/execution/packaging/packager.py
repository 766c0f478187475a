"""ArtifactBuilder — bundle lesson jobs into executable .pyz archives.

Creates PEP 441-compliant zip archives that embed:

1. The job's source units (single ``.py`` modules and package directories)
2. An ``artifact.json`` manifest describing the entry point and bundle
3. A generated ``__main__.py`` that imports the entry point, calls it and
   maps the outcome onto a process exit code.  ``CLUSTERDECK_ENTRY_POINT``
   in the environment overrides the entry point baked into the manifest.

The resulting ``.pyz`` runs with ``python job.pyz [args...]`` on any worker
whose interpreter has the job's third-party libraries installed.  Those
libraries are *checked* at build time but never bundled.

Build-time validation is purely static (``ast``): no job code is imported
or executed on the building machine.

Limitations:
- Imports guarded by ``try/except ImportError`` are treated as optional
- Dynamic imports (``importlib.import_module(name)``) are not seen
- Third-party dependencies must be installed on every worker
"""

from __future__ import annotations

import ast
import hashlib
import importlib.util
import json
import platform
import shutil
import sys
import tempfile
import textwrap
import zipapp
import zipfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clusterdeck.core.errors import BuildError, InvalidSubmissionError, NotFoundError
from clusterdeck.core.logging import get_logger
from clusterdeck.execution.models import EntryPoint, utcnow

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

MANIFEST_VERSION = 1
MANIFEST_NAME = "artifact.json"

# Exit codes written into every generated __main__.py
EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_ENTRY_POINT = 3
EXIT_RESOURCES = 4

RESULT_FILE_ENV = "CLUSTERDECK_RESULT_FILE"
ENTRY_POINT_ENV = "CLUSTERDECK_ENTRY_POINT"

_IMPORT_ERRORS = {"ImportError", "ModuleNotFoundError"}


@dataclass(frozen=True)
class ArtifactManifest:
    """Metadata about a built artifact.

    Written as ``artifact.json`` inside the ``.pyz`` and returned by
    :meth:`ArtifactBuilder.inspect`.
    """

    name: str
    entry_point: str
    built_at: str
    args: list[str] = field(default_factory=list)
    modules: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    python_version: str = ""
    manifest_version: int = MANIFEST_VERSION
    sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entry_point": self.entry_point,
            "built_at": self.built_at,
            "args": list(self.args),
            "modules": list(self.modules),
            "files": list(self.files),
            "python_version": self.python_version,
            "manifest_version": self.manifest_version,
            "sha256": self.sha256,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactManifest:
        return cls(
            name=data["name"],
            entry_point=data["entry_point"],
            built_at=data["built_at"],
            args=list(data.get("args", [])),
            modules=list(data.get("modules", [])),
            files=list(data.get("files", [])),
            python_version=data.get("python_version", ""),
            manifest_version=data.get("manifest_version", MANIFEST_VERSION),
            sha256=data.get("sha256", ""),
        )


@dataclass
class _Bundle:
    """Source files collected for one build: archive path → source path."""

    files: dict[str, Path] = field(default_factory=dict)
    modules: dict[str, str] = field(default_factory=dict)  # module name → archive path

    def add_module(self, module: str, rel_path: str, source: Path) -> None:
        if rel_path in self.files and self.files[rel_path] != source:
            raise BuildError(
                f"Two source units provide {rel_path}: {self.files[rel_path]} and {source}"
            ).with_context(path=str(source))
        self.files[rel_path] = source
        self.modules[module] = rel_path

    def add_file(self, rel_path: str, source: Path) -> None:
        self.files.setdefault(rel_path, source)

    def is_package(self, module: str) -> bool:
        return self.modules.get(module, "").endswith("__init__.py")


# ---------------------------------------------------------------------------
# __main__.py template
# ---------------------------------------------------------------------------

_MAIN_TEMPLATE = textwrap.dedent("""\
    #!/usr/bin/env python3
    \"\"\"Auto-generated entry point for clusterdeck artifact: {name}.

    Execute with:  python {archive_name} [args...]
    \"\"\"
    from __future__ import annotations

    import importlib
    import inspect
    import json
    import os
    import sys
    import traceback

    ENTRY_POINT = {entry_point!r}
    ARGS = {args!r}


    def _entry_point() -> str:
        return (os.environ.get({entry_env!r}) or ENTRY_POINT).strip()


    def _resolve(entry_point):
        module_name, _, attr = entry_point.partition(":")
        module = importlib.import_module(module_name)
        return getattr(module, attr or "main")


    def _write_result(result) -> None:
        target = os.environ.get({result_env!r})
        if target and isinstance(result, (str, os.PathLike)):
            with open(target, "w", encoding="utf-8") as fh:
                json.dump({{"output_location": os.fspath(result)}}, fh)


    def main() -> int:
        entry_point = _entry_point()
        try:
            func = _resolve(entry_point)
        except (ImportError, AttributeError, ValueError) as exc:
            print(f"clusterdeck: entry point {{entry_point}} not resolvable: {{exc}}", file=sys.stderr)
            return {exit_entry}

        argv = [*ARGS, *sys.argv[1:]]
        try:
            result = func(argv) if inspect.signature(func).parameters else func()
        except MemoryError:
            traceback.print_exc()
            return {exit_resources}
        except SystemExit as exc:
            if exc.code in (None, 0):
                return {exit_ok}
            print(f"clusterdeck: job exited with {{exc.code!r}}", file=sys.stderr)
            return {exit_runtime}
        except Exception:
            traceback.print_exc()
            return {exit_runtime}

        _write_result(result)
        return {exit_ok}


    if __name__ == "__main__":
        sys.exit(main())
""")


# ---------------------------------------------------------------------------
# Static analysis helpers
# ---------------------------------------------------------------------------


class _ImportCollector(ast.NodeVisitor):
    """Collect required imports, skipping ones guarded by ``except ImportError``."""

    def __init__(self) -> None:
        self.required: list[tuple[int, str, list[str], int]] = []  # (level, module, names, lineno)
        self._optional_depth = 0

    def visit_Try(self, node: ast.Try) -> None:
        guarded = any(_catches_import_error(h) for h in node.handlers)
        if guarded:
            self._optional_depth += 1
        for stmt in node.body:
            self.visit(stmt)
        if guarded:
            self._optional_depth -= 1
        for part in (*node.handlers, *node.orelse, *node.finalbody):
            self.visit(part)

    visit_TryStar = visit_Try

    def visit_Import(self, node: ast.Import) -> None:
        if not self._optional_depth:
            for alias in node.names:
                self.required.append((0, alias.name, [], node.lineno))

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if not self._optional_depth:
            names = [a.name for a in node.names if a.name != "*"]
            self.required.append((node.level, node.module or "", names, node.lineno))


def _catches_import_error(handler: ast.ExceptHandler) -> bool:
    if handler.type is None:
        return True
    types = handler.type.elts if isinstance(handler.type, ast.Tuple) else [handler.type]
    for t in types:
        name = t.id if isinstance(t, ast.Name) else getattr(t, "attr", "")
        if name in _IMPORT_ERRORS or name == "Exception":
            return True
    return False


def _parse(path: Path) -> ast.Module:
    try:
        return ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except SyntaxError as exc:
        raise BuildError(f"Syntax error in {path}: {exc.msg} (line {exc.lineno})").with_context(
            path=str(path)
        ) from exc


def _is_external(top: str) -> bool:
    if top in sys.stdlib_module_names or top in sys.builtin_module_names:
        return True
    try:
        return importlib.util.find_spec(top) is not None
    except (ImportError, ValueError):
        return False


def _check_entry_signature(func: ast.FunctionDef, entry: EntryPoint) -> None:
    args = func.args
    positional = [*args.posonlyargs, *args.args]
    required = len(positional) - len(args.defaults)
    kw_required = [a.arg for a, d in zip(args.kwonlyargs, args.kw_defaults) if d is None]
    if required > 1 or kw_required:
        raise BuildError(
            f"Entry point {entry} must accept no arguments or a single argv list, "
            f"found signature ({', '.join(a.arg for a in positional)})"
        ).with_context(entry_point=str(entry))


# ---------------------------------------------------------------------------
# ArtifactBuilder
# ---------------------------------------------------------------------------


class ArtifactBuilder:
    """Bundle a lesson job into a self-contained .pyz archive.

    Example::

        builder = ArtifactBuilder()
        path, manifest = builder.build(
            "wordcount.job:main",
            ["lessons/wordcount"],
            "dist/wordcount.pyz",
            args=["/data/datasets/in", "/data/out"],
        )
        # Execute: python dist/wordcount.pyz

    Source units are either ``.py`` files (bundled as top-level modules),
    package directories (containing ``__init__.py``, bundled under their
    own name) or plain directories (their contents bundled at the archive
    root).

    Parameters
    ----------
    interpreter : str or None
        Shebang for the archive.  ``None`` for no shebang.
    """

    def __init__(self, *, interpreter: str | None = "/usr/bin/env python3") -> None:
        self._interpreter = interpreter

    # -- public API ----------------------------------------------------------

    def build(
        self,
        entry_point: str,
        source_units: Sequence[str | Path],
        output: str | Path,
        *,
        args: Sequence[str] = (),
        name: str | None = None,
        compressed: bool = True,
    ) -> tuple[Path, ArtifactManifest]:
        """Build an artifact.

        Returns
        -------
        (path, manifest)
            Path to the created archive and its manifest.  The manifest's
            ``entry_point`` equals *entry_point* with surrounding whitespace
            removed.

        Raises
        ------
        BuildError
            Malformed or missing entry point, or unresolved imports.
        """
        try:
            entry = EntryPoint.parse(entry_point)
        except InvalidSubmissionError as exc:
            raise BuildError(exc.message).with_context(entry_point=entry_point) from exc
        entry_point = entry_point.strip()

        if not source_units:
            raise BuildError("No source units given").with_context(entry_point=entry_point)

        output_path = Path(output)
        if output_path.suffix != ".pyz":
            output_path = output_path.with_suffix(".pyz")

        bundle = self._collect(source_units)
        self._check_entry_point(bundle, entry)
        self._check_imports(bundle)

        digest = hashlib.sha256()
        for rel_path in sorted(bundle.files):
            digest.update(rel_path.encode())
            digest.update(bundle.files[rel_path].read_bytes())

        manifest = ArtifactManifest(
            name=name or output_path.stem,
            entry_point=entry_point,
            built_at=utcnow().isoformat(),
            args=list(args),
            modules=sorted(bundle.modules),
            files=sorted(bundle.files),
            python_version=platform.python_version(),
            sha256=digest.hexdigest(),
        )

        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmpdir = tempfile.mkdtemp(prefix="clusterdeck_build_")
        try:
            self._write_archive_contents(Path(tmpdir), bundle, manifest, output_path.name)
            zipapp.create_archive(
                tmpdir,
                target=str(output_path),
                interpreter=self._interpreter,
                compressed=compressed,
            )
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)

        log = logger.bind(
            artifact=manifest.name,
            entry_point=entry_point,
            output=str(output_path),
            size_bytes=output_path.stat().st_size,
            modules=len(manifest.modules),
        )
        log.info("artifact.built")
        return output_path, manifest

    def inspect(self, archive: str | Path) -> ArtifactManifest:
        """Read the manifest from an existing artifact.

        Raises
        ------
        NotFoundError
            If the archive doesn't exist.
        BuildError
            If the file is not an artifact built by clusterdeck.
        """
        archive_path = Path(archive)
        if not archive_path.is_file():
            raise NotFoundError(f"Artifact not found: {archive_path}").with_context(path=str(archive_path))

        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                raw = zf.read(MANIFEST_NAME)
        except (KeyError, zipfile.BadZipFile):
            raise BuildError(f"No {MANIFEST_NAME} in archive: {archive_path}").with_context(
                path=str(archive_path)
            ) from None

        return ArtifactManifest.from_dict(json.loads(raw))

    def unpack(self, archive: str | Path, destination: str | Path) -> Path:
        """Extract an artifact into *destination* (created if needed)."""
        archive_path = Path(archive)
        if not archive_path.is_file():
            raise NotFoundError(f"Artifact not found: {archive_path}").with_context(path=str(archive_path))
        dest_path = Path(destination)
        dest_path.mkdir(parents=True, exist_ok=True)

        with zipfile.ZipFile(archive_path, "r") as zf:
            zf.extractall(dest_path)

        logger.info("artifact.unpacked", archive=str(archive_path), destination=str(dest_path))
        return dest_path

    # -- internal helpers ----------------------------------------------------

    def _collect(self, source_units: Iterable[str | Path]) -> _Bundle:
        bundle = _Bundle()
        for unit in source_units:
            path = Path(unit)
            if not path.exists():
                raise BuildError(f"Source unit not found: {path}").with_context(path=str(path))
            if path.is_file():
                if path.suffix != ".py":
                    raise BuildError(f"Source unit is not a Python module: {path}").with_context(path=str(path))
                bundle.add_module(path.stem, path.name, path)
            elif (path / "__init__.py").is_file():
                self._collect_tree(bundle, path, prefix=path.name)
            else:
                self._collect_tree(bundle, path, prefix="")

        if "__main__" in bundle.modules or "__main__.py" in bundle.files:
            raise BuildError("Source units may not contain a top-level __main__.py")
        return bundle

    @staticmethod
    def _collect_tree(bundle: _Bundle, root: Path, *, prefix: str) -> None:
        for file in sorted(root.rglob("*")):
            if not file.is_file() or "__pycache__" in file.parts or file.suffix == ".pyc":
                continue
            rel = file.relative_to(root)
            rel_path = "/".join((prefix, *rel.parts)) if prefix else "/".join(rel.parts)
            if file.suffix != ".py":
                bundle.add_file(rel_path, file)
                continue
            parts = rel_path[:-3].split("/")
            if parts[-1] == "__init__":
                parts = parts[:-1]
            if parts:
                bundle.add_module(".".join(parts), rel_path, file)

    @staticmethod
    def _check_entry_point(bundle: _Bundle, entry: EntryPoint) -> None:
        rel_path = bundle.modules.get(entry.module)
        if rel_path is None:
            raise BuildError(
                f"Entry module {entry.module!r} is not part of the bundled sources"
            ).with_context(entry_point=str(entry))

        tree = _parse(bundle.files[rel_path])
        for node in tree.body:
            if isinstance(node, ast.FunctionDef) and node.name == entry.attr:
                _check_entry_signature(node, entry)
                return
            if isinstance(node, ast.AsyncFunctionDef) and node.name == entry.attr:
                raise BuildError(f"Entry point {entry} is a coroutine function").with_context(
                    entry_point=str(entry)
                )
            if isinstance(node, (ast.Import, ast.ImportFrom, ast.Assign, ast.ClassDef)):
                bound = _bound_names(node)
                if entry.attr in bound:
                    return

        raise BuildError(
            f"Entry point function {entry.attr!r} not found in module {entry.module!r}"
        ).with_context(entry_point=str(entry))

    def _check_imports(self, bundle: _Bundle) -> None:
        unresolved: set[str] = set()
        for module, rel_path in sorted(bundle.modules.items()):
            collector = _ImportCollector()
            collector.visit(_parse(bundle.files[rel_path]))
            for level, target, names, _lineno in collector.required:
                name = self._absolute(bundle, module, level, target)
                if name is None:
                    unresolved.add(f"{'.' * level}{target or ', '.join(names)} (from {module})")
                    continue
                if not self._resolves(bundle, name, names, relative=level > 0):
                    unresolved.add(name)

        if unresolved:
            missing = sorted(unresolved)
            raise BuildError(
                f"Unresolved dependencies: {', '.join(missing)}",
                unresolved=missing,
            )

    @staticmethod
    def _absolute(bundle: _Bundle, module: str, level: int, target: str) -> str | None:
        if level == 0:
            return target
        package = module if bundle.is_package(module) else module.rpartition(".")[0]
        parts = package.split(".") if package else []
        if level - 1 > len(parts) or (level - 1 == len(parts) and not target):
            return None
        base = parts[: len(parts) - (level - 1)]
        return ".".join([*base, target] if target else base) or None

    @staticmethod
    def _resolves(bundle: _Bundle, name: str, names: list[str], *, relative: bool) -> bool:
        top = name.split(".")[0]
        if top in bundle.modules or any(m.startswith(top + ".") for m in bundle.modules):
            # ``from pkg import sub`` may name either a submodule or an attribute
            return name in bundle.modules or any(f"{name}.{n}" in bundle.modules for n in names)
        if relative:
            return False
        return _is_external(top)

    @staticmethod
    def _write_archive_contents(
        base: Path,
        bundle: _Bundle,
        manifest: ArtifactManifest,
        archive_name: str,
    ) -> None:
        for rel_path, source in bundle.files.items():
            target = base / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)

        (base / MANIFEST_NAME).write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")

        main_content = _MAIN_TEMPLATE.format(
            name=manifest.name,
            archive_name=archive_name,
            entry_point=manifest.entry_point,
            args=list(manifest.args),
            result_env=RESULT_FILE_ENV,
            entry_env=ENTRY_POINT_ENV,
            exit_ok=EXIT_OK,
            exit_runtime=EXIT_RUNTIME_ERROR,
            exit_entry=EXIT_ENTRY_POINT,
            exit_resources=EXIT_RESOURCES,
        )
        (base / "__main__.py").write_text(main_content, encoding="utf-8")


def _bound_names(node: ast.stmt) -> set[str]:
    if isinstance(node, (ast.Import, ast.ImportFrom)):
        return {(a.asname or a.name).split(".")[0] for a in node.names}
    if isinstance(node, ast.ClassDef):
        return {node.name}
    if isinstance(node, ast.Assign):
        return {t.id for t in node.targets if isinstance(t, ast.Name)}
    return set()


def build_artifact(
    entry_point: str,
    source_units: Sequence[str | Path],
    output: str | Path,
    *,
    args: Sequence[str] = (),
) -> tuple[Path, ArtifactManifest]:
    """Build with a default :class:`ArtifactBuilder`."""
    return ArtifactBuilder().build(entry_point, source_units, output, args=args)
