"""
Atomic file writes.

Writes go to a temporary file in the target directory which then replaces
the target with os.replace(), so readers never see a partial file.
"""

import os
import tempfile
from pathlib import Path


class AtomicFileWriter:
    """Atomic file writer using temp file + atomic replace."""

    @staticmethod
    def write_text(filepath: Path, text: str, mode: int = 0o600) -> None:
        """
        Atomically write text to a file.

        Args:
            filepath: Target file path
            text: Content to write
            mode: Permission bits for the new file

        Raises:
            OSError: If the write fails (the temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='w',
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix='.tmp',
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(text)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, filepath)

        except Exception:
            if temp_path and temp_path.exists():
                temp_path.unlink(missing_ok=True)
            raise
