"""Read and write TOML config files using Pydantic models.

Unreadable files, malformed TOML and values rejected by the model are all
raised as [`ConfigError`][sharecode.exceptions.ConfigError], with one line
per invalid field, so the CLI can report them without a traceback.
"""

from __future__ import annotations

import pathlib
import sys
from typing import TypeVar

import pydantic
import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

from sharecode.exceptions import ConfigError

BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def dumps(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Serialize a model to a TOML formatted string.

    Args:
        model: Config model instance to write.
        exclude_none: Skip writing none attributes. TOML has no null
            value so this must be `True` if any attribute is `None`.

    Returns:
        TOML string of the model.
    """
    return tomli_w.dumps(model.model_dump(exclude_none=exclude_none))


def dump_file(
    model: BaseModel,
    filepath: str | pathlib.Path,
    *,
    exclude_none: bool = True,
) -> None:
    """Write a model to a TOML file, creating parent directories.

    Args:
        model: Config model instance to write.
        filepath: Destination path.
        exclude_none: Skip writing none attributes.
    """
    filepath = pathlib.Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'wb') as f:
        tomli_w.dump(model.model_dump(exclude_none=exclude_none), f)


def loads(
    model: type[BaseModelT],
    data: str,
    *,
    source: str = '<string>',
) -> BaseModelT:
    """Parse a TOML string into a model.

    Values are validated in strict mode so, for example, a quoted port
    number is rejected rather than coerced.

    Args:
        model: Config model type to parse TOML using.
        data: TOML string to parse.
        source: Name of the input used in error messages.

    Returns:
        Model initialized from the TOML string.

    Raises:
        ConfigError: If `data` is not valid TOML or does not match `model`.
    """
    try:
        raw = tomllib.loads(data)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f'Invalid TOML in {source}: {e}') from e
    try:
        return model.model_validate(raw, strict=True)
    except pydantic.ValidationError as e:
        raise ConfigError(_describe(source, e)) from e


def load_file(
    model: type[BaseModelT],
    filepath: str | pathlib.Path,
) -> BaseModelT:
    """Parse a TOML file into a model.

    Raises:
        ConfigError: If the file cannot be read or is invalid.
    """
    filepath = pathlib.Path(filepath)
    try:
        data = filepath.read_bytes().decode()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f'Cannot read config file {filepath}: {e}') from e
    return loads(model, data, source=str(filepath))


def _describe(source: str, error: pydantic.ValidationError) -> str:
    lines = [f'Invalid configuration in {source}:']
    for detail in error.errors():
        field = '.'.join(str(part) for part in detail['loc']) or '<root>'
        lines.append(f'  {field}: {detail["msg"]}')
    return '\n'.join(lines)
