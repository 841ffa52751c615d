"""Relay server configuration file parsing."""

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
from pydantic import model_validator

from signalrelay.utils.config import dump
from signalrelay.utils.config import load


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of currently connected participants.
        current_client_limit: Max threshold for enumerating the
            detailed list of connected participants. If `None`, no detailed
            list will be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        admission: `anonymous` admits every connection. `identified`
            requires a unique identifier as the last segment of the
            connection path.
        routing: `broadcast` forwards messages unchanged. `addressed`
            wraps messages with the sender's identifier and requires
            `identified` admission.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server.
        max_pending_messages: Maximum number of messages waiting to be sent
            to a single participant before further messages are dropped.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 8080
    certfile: str | None = None
    keyfile: str | None = None
    admission: Literal['anonymous', 'identified'] = 'anonymous'
    routing: Literal['broadcast', 'addressed'] = 'broadcast'
    max_message_bytes: int | None = None
    max_pending_messages: int = 256
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @model_validator(mode='after')
    def _check_addressed_requires_identifiers(self) -> Self:
        if self.routing == 'addressed' and self.admission != 'identified':
            raise ValueError(
                'Addressed routing requires identified admission so every '
                'message has a sender identifier.',
            )
        return self

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            Two identified peers with addressed routing over TLS.
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 8080
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"
            admission = "identified"
            routing = "addressed"

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 32
            ```

            ```python
            from signalrelay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        return load(cls, filepath)

    def to_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the config to a TOML file readable by `from_toml()`.

        Unset optional values are omitted.
        """
        dump(self, filepath)
