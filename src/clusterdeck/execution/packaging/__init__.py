"""
Job Artifact packaging — portable, self-contained lesson jobs.

This module provides ``ArtifactBuilder`` for bundling a lesson job's
source units into a standalone ``.pyz`` archive (PEP 441) that a worker
executes with a bare ``python job.pyz [args...]``.

Architecture::

    ┌──────────────────┐
    │  ArtifactBuilder │
    │                  │
    │  .build()   ─────┼──► wordcount.pyz  (sources + artifact.json + __main__.py)
    │  .inspect() ─────┼──► ArtifactManifest
    │  .unpack()  ─────┼──► directory tree
    └──────────────────┘

Key design constraints:

- The **entry point** (``package.module:function``) must name a bundled
  module and a function taking no arguments or a single ``argv`` list.
- Every import must resolve to a bundled module, the standard library or
  an installed distribution, else ``BuildError`` lists what is missing.
- Artifacts are immutable once built; staging copies them, nothing
  deletes them.

Usage::

    from clusterdeck.execution.packaging import ArtifactBuilder

    path, manifest = ArtifactBuilder().build(
        "wordcount.job:main", ["lessons/wordcount"], "dist/wordcount.pyz"
    )
    print(f"Created {path}  ({path.stat().st_size} bytes)")

Tags:
    clusterdeck, execution, packaging, pyz, artifact, deployment

Doc-Types:
    api-reference
"""

from clusterdeck.execution.packaging.packager import (
    ENTRY_POINT_ENV,
    EXIT_ENTRY_POINT,
    EXIT_OK,
    EXIT_RESOURCES,
    EXIT_RUNTIME_ERROR,
    MANIFEST_NAME,
    RESULT_FILE_ENV,
    ArtifactBuilder,
    ArtifactManifest,
    build_artifact,
)

__all__ = [
    "ArtifactBuilder",
    "ArtifactManifest",
    "build_artifact",
    "EXIT_OK",
    "EXIT_RUNTIME_ERROR",
    "EXIT_ENTRY_POINT",
    "EXIT_RESOURCES",
    "MANIFEST_NAME",
    "RESULT_FILE_ENV",
    "ENTRY_POINT_ENV",
]
