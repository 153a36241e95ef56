"""Inbound launch events from discovery monitors."""

from __future__ import annotations

import json
from typing import Any, Iterable, Iterator, Mapping, Union

from solders.pubkey import Pubkey

from ..datalake.schemas import DiscoveryEvent
from ..monitoring.logger import get_logger
from ..utils.errors import ValidationError

logger = get_logger(__name__)


def _address(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"discovery event missing {key!r}")
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise ValidationError(f"discovery event {key!r} is not an address: {value!r}") from exc
    return value


def parse_discovery_event(payload: Union[str, bytes, Mapping[str, Any]]) -> DiscoveryEvent:
    """Validate ``{mint, platform, developer, signature?}`` into a ``DiscoveryEvent``."""

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"discovery event is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValidationError("discovery event must be a JSON object")
    platform = payload.get("platform")
    if not isinstance(platform, str) or not platform.strip():
        raise ValidationError("discovery event missing 'platform'")
    signature = payload.get("signature")
    if signature is not None and not isinstance(signature, str):
        raise ValidationError("discovery event 'signature' must be a string")
    return DiscoveryEvent(
        mint=_address(payload, "mint"),
        platform=platform.strip().lower(),
        developer=_address(payload, "developer"),
        signature=signature,
    )


def iter_discovery_events(lines: Iterable[str]) -> Iterator[DiscoveryEvent]:
    """Parse JSON lines, logging and skipping malformed ones."""

    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            yield parse_discovery_event(line)
        except ValidationError as exc:
            logger.warning("Skipping discovery line %d: %s", number, exc)


__all__ = ["iter_discovery_events", "parse_discovery_event"]
