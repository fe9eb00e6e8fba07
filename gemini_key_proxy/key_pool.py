from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

import yaml

from gemini_key_proxy.errors import ConfigurationError

if TYPE_CHECKING:
    from gemini_key_proxy.settings import Settings


@dataclass(frozen=True, slots=True)
class KeyPool:
    """Upstream credentials loaded once at startup; never mutated afterwards."""

    credentials: tuple[str, ...] = ()

    @classmethod
    def from_values(cls, values: Iterable[str]) -> KeyPool:
        return cls(credentials=tuple(_normalize_credentials(values)))

    def __len__(self) -> int:
        return len(self.credentials)

    def __iter__(self) -> Iterator[str]:
        return iter(self.credentials)

    def __contains__(self, credential: object) -> bool:
        return credential in self.credentials

    @property
    def is_empty(self) -> bool:
        return not self.credentials


def load_key_pool(settings: Settings) -> KeyPool:
    values = list(settings.google_api_keys_list)
    if settings.google_api_keys_file:
        values.extend(load_keys_file(settings.google_api_keys_file))
    return KeyPool.from_values(values)


def load_keys_file(path: str | Path) -> list[str]:
    """Read credentials from a YAML file.

    Accepts either a bare list of keys or a mapping with a ``keys`` list.
    """
    resolved = Path(path)
    try:
        with resolved.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"API keys file not found: '{resolved}'.") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in API keys file '{resolved}'.") from exc

    if payload is None:
        return []
    if isinstance(payload, dict):
        payload = payload.get("keys", [])
    if not isinstance(payload, list):
        raise ConfigurationError(
            f"Expected a list of keys or a 'keys' list in '{resolved}'."
        )
    return [str(item) for item in payload if item is not None]


def mask_credential(credential: str, visible: int = 8) -> str:
    if len(credential) <= visible:
        return "*" * len(credential)
    return f"{credential[:visible]}..."


def _normalize_credentials(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        output.append(normalized)
    return output
