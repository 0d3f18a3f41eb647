from __future__ import annotations

from typing import Any

from searchhub.connectors.base import BaseConnector
from searchhub.connectors.gmail import GmailConnector
from searchhub.connectors.lark import LarkConnector
from searchhub.connectors.slack import SlackConnector
from searchhub.credentials import CredentialStore
from searchhub.schemas import ConnectorConfig

_CONNECTORS: dict[str, type[BaseConnector]] = {
    "gmail": GmailConnector,
    "slack": SlackConnector,
    "lark": LarkConnector,
}


def supported_platforms() -> list[str]:
    return sorted(_CONNECTORS)


def create_connector(config: ConnectorConfig, store: CredentialStore, **kwargs: Any) -> BaseConnector:
    connector_cls = _CONNECTORS.get(config.platform.lower().strip())
    if connector_cls is None:
        raise ValueError(f"Unsupported platform: {config.platform}")
    return connector_cls(config, store, **kwargs)
