"""File metadata message sent before any file chunk.

The first message on a data channel is always a UTF-8 text message with a
JSON object describing the file:

```json
{"name": "doc.bin", "size": 10485760}
```

Every later message is a binary slice of the file.
"""
from __future__ import annotations

import dataclasses
import json
import os
from typing import Any

from sharecode.transfer.exceptions import MetadataDecodeError


@dataclasses.dataclass(frozen=True)
class FileMetadata:
    """Name and size of the file being transferred.

    Attributes:
        name: File name as chosen by the sender. Receivers must not trust
            it as a path.
        size: Size of the file in bytes.
    """

    name: str
    size: int

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> FileMetadata:
        """Describe a file on the local file system."""
        return cls(name=os.path.basename(path), size=os.path.getsize(path))


def encode_metadata(metadata: FileMetadata) -> str:
    """Encode file metadata as a JSON string."""
    return json.dumps({'name': metadata.name, 'size': metadata.size})


def decode_metadata(message: str | bytes) -> FileMetadata:
    """Decode a JSON text message into file metadata.

    Args:
        message: JSON string (or UTF-8 bytes) to decode.

    Returns:
        Decoded metadata.

    Raises:
        MetadataDecodeError: If the message is not valid JSON, is not an
            object, or does not contain a string `name` and a non-negative
            integer `size`.
    """
    if isinstance(message, bytes):
        try:
            message = message.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MetadataDecodeError(f'Metadata is not UTF-8: {e}') from e

    try:
        data: Any = json.loads(message)
    except json.JSONDecodeError as e:
        raise MetadataDecodeError(f'Failed to load string as JSON: {e}') from e

    if not isinstance(data, dict):
        raise MetadataDecodeError(
            f'Metadata must be a JSON object, got {type(data).__name__}.',
        )

    name = data.get('name')
    size = data.get('size')
    if not isinstance(name, str):
        raise MetadataDecodeError('Metadata does not contain a string name.')
    # bool is a subclass of int but "size": true is not a size
    if isinstance(size, bool) or not isinstance(size, int):
        raise MetadataDecodeError('Metadata does not contain an integer size.')
    if size < 0:
        raise MetadataDecodeError(f'Metadata size ({size}) is negative.')

    return FileMetadata(name=name, size=size)
