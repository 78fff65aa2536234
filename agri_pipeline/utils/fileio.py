"""
Small file helpers shared by the checkpoint store, scorer and aggregator.
"""

import os
import tempfile
from pathlib import Path
from typing import Union


def atomic_write_text(path: Union[str, Path], content: str) -> None:
    """
    Write text to a file so readers see either the old or the new content.

    The content is written to a temporary file in the same directory, flushed
    to disk and then renamed over the target.

    Args:
        path: Destination file path
        content: Text to write
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
