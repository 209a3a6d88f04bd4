from __future__ import annotations

import os
import stat
import tempfile


def _inherited_mode(path: str) -> int:
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def atomic_write_text(path: str, text: str, *, mode: int | None = None) -> None:
    """Brief: Replace *path* with *text* so readers never see a partial file.

    Inputs:
      - path: Destination file path.
      - text: Full file contents.
      - mode: Optional permission bits applied to the new file before rename.
        When omitted an existing file keeps its permission bits and a new
        file gets 0o666 masked by the process umask.

    Outputs:
      - None; raises OSError when the write or rename fails. On failure the
        previous file (if any) is left untouched and the temporary file is
        removed.

    Example:
      >>> atomic_write_text("/tmp/example.log", "hello\\n")
    """

    directory = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix="." + os.path.basename(path) + ".", suffix=".tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is None:
            mode = _inherited_mode(path)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
