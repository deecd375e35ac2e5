"""Workdir materialization: project archive extracted per leased task."""

from __future__ import annotations

import io
import logging
import shutil
import tarfile
from pathlib import Path

from flowlease.errors import ConfigError

logger = logging.getLogger(__name__)


class TaskWorkdirManager:
    """Creates a fresh ``<root>/<site_id>/<task_id>`` directory per invocation."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def materialize(self, *, site_id: int, task_id: int, archive: bytes | None) -> Path | None:
        """Extract ``archive`` (tar.gz) and return the project directory.

        Returns ``None`` when the task has no project archive.
        """

        if archive is None:
            return None
        base_dir = self.root_dir / str(site_id) / str(task_id)
        if base_dir.exists():
            shutil.rmtree(base_dir)
        base_dir.mkdir(parents=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as bundle:
                bundle.extractall(base_dir, filter="data")
        except (tarfile.TarError, OSError) as error:
            shutil.rmtree(base_dir, ignore_errors=True)
            raise ConfigError(
                f"Project archive of task {task_id} cannot be extracted: {error}",
            ) from error
        logger.debug("Extracted project archive for task %s into %s", task_id, base_dir)
        return base_dir

    def release(self, path: Path | None) -> None:
        if path is None:
            return
        shutil.rmtree(path, ignore_errors=True)


def build_archive(project_dir: Path) -> bytes:
    """Pack ``project_dir`` contents into a tar.gz with paths relative to it."""

    if not project_dir.is_dir():
        raise ConfigError(f"Project directory does not exist: {project_dir}")
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for path in sorted(project_dir.rglob("*")):
            if path.is_file():
                bundle.add(path, arcname=path.relative_to(project_dir).as_posix())
    return buffer.getvalue()
