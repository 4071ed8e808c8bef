"""Hand received files to their destination."""
from __future__ import annotations

import logging
import os
import pathlib
from typing import Protocol
from typing import runtime_checkable

from sharecode.transfer.metadata import FileMetadata

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = 'received-file'


@runtime_checkable
class FileSink(Protocol):
    """Destination of received files."""

    def deliver(self, metadata: FileMetadata, data: bytes) -> pathlib.Path:
        """Store a received file.

        Args:
            metadata: Metadata sent by the peer.
            data: Reassembled file contents.

        Returns:
            Path the file was written to.
        """
        ...


def safe_name(name: str) -> str:
    """Reduce a name chosen by the peer to a plain file name.

    Any directory components are dropped, so the result can never point
    outside the directory it is joined with.

    Example:
        ```python
        >>> safe_name('../../etc/passwd')
        'passwd'
        >>> safe_name('C:\\\\Users\\\\me\\\\doc.txt')
        'doc.txt'
        ```
    """
    base = name.replace('\\', '/').rsplit('/', 1)[-1]
    base = base.replace('\x00', '').strip()
    if base in ('', '.', '..'):
        return DEFAULT_FILE_NAME
    return base


class DirectorySink:
    """Write received files into a directory.

    Existing files are never overwritten; a numbered suffix is added
    instead (`report.pdf`, `report (1).pdf`, `report (2).pdf`, ...).

    Args:
        directory: Directory to write files to. Created if missing.
    """

    def __init__(self, directory: str | os.PathLike[str] = '.') -> None:
        self.directory = pathlib.Path(directory)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(directory={self.directory})'

    def deliver(self, metadata: FileMetadata, data: bytes) -> pathlib.Path:
        """Write a received file to a new path in the directory."""
        self.directory.mkdir(parents=True, exist_ok=True)
        name = safe_name(metadata.name)
        stem, suffix = os.path.splitext(name)

        counter = 0
        while True:
            candidate = name if counter == 0 else f'{stem} ({counter}){suffix}'
            path = self.directory / candidate
            try:
                # Exclusive create, fails if the path exists
                with open(path, 'xb') as f:
                    f.write(data)
            except FileExistsError:
                counter += 1
            else:
                logger.info(f'Saved {len(data)} bytes to {path}')
                return path
