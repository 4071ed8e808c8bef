"""Configuration file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys
from typing import Literal

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from sharecode.signaling.codes import DEFAULT_CODE_LENGTH
from sharecode.signaling.redis import DEFAULT_PREFIX
from sharecode.signaling.redis import DEFAULT_RECORD_TTL
from sharecode.transfer.chunks import DEFAULT_CHUNK_SIZE
from sharecode.transport.rtc import DEFAULT_ICE_SERVERS
from sharecode.utils.config import dump_file
from sharecode.utils.config import load_file


class StoreConfig(BaseModel):
    """Record store configuration.

    Attributes:
        backend: Record store implementation. `memory` only works when
            both parties run in the same process.
        hostname: Redis server hostname.
        port: Redis server port.
        username: Optional Redis ACL username.
        password: Optional Redis password. Excluded from the
            [`repr()`][repr] of this class.
        prefix: Prefix of every Redis key written.
        record_ttl: Seconds a record lives after its last write.
    """

    model_config = ConfigDict(extra='forbid')

    backend: Literal['redis', 'memory'] = 'redis'
    hostname: str = 'localhost'
    port: int = 6379
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    prefix: str = DEFAULT_PREFIX
    record_ttl: int | None = Field(default=DEFAULT_RECORD_TTL, gt=0)


class TransferConfig(BaseModel):
    """File transfer configuration.

    Attributes:
        chunk_size: Size in bytes of each binary message.
        grace_delay: Seconds to wait after the last chunk before the
            session is torn down.
        output_dir: Directory received files are saved in.
        peer_timeout: Optional seconds to wait for the peer to connect.
            `None` waits until cancelled.
    """

    model_config = ConfigDict(extra='forbid')

    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    grace_delay: float = Field(default=3.0, ge=0)
    output_dir: str = '.'
    peer_timeout: float | None = Field(default=None, gt=0)


class IceConfig(BaseModel):
    """Connectivity configuration.

    Attributes:
        servers: STUN or TURN server URLs.
    """

    model_config = ConfigDict(extra='forbid')

    servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Logging level of the root logger.
        log_dir: Optional directory to write rotating log files to.
        third_party_level: Logging level of the `aioice` and `aiortc`
            loggers. They log with much higher frequency so it is
            suggested to set this to `WARNING` or higher.
    """

    model_config = ConfigDict(extra='forbid')

    level: int | str = logging.INFO
    log_dir: str | None = None
    third_party_level: int | str = logging.WARNING


class ShareConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        code_length: Number of digits in a share code.
        store: Record store configuration.
        transfer: File transfer configuration.
        ice: Connectivity configuration.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    code_length: int = Field(default=DEFAULT_CODE_LENGTH, gt=0)
    store: StoreConfig = Field(default_factory=StoreConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    ice: IceConfig = Field(default_factory=IceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="sharecode.toml"
            code_length = 6

            [store]
            hostname = "redis.example.com"
            port = 6379
            password = "..."

            [transfer]
            output_dir = "/path/to/downloads"

            [logging]
            log_dir = "/path/to/log/dir"
            level = "INFO"
            ```

            ```python
            from sharecode.config import ShareConfig

            config = ShareConfig.from_toml('sharecode.toml')
            assert config.transfer.chunk_size == 65536
            ```

        Note:
            Omitted values will be set to their defaults.

        Raises:
            ConfigError: If the file cannot be read or is invalid.
        """
        return load_file(cls, filepath)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file.

        Unset optional values are omitted.
        """
        dump_file(self, filepath)
