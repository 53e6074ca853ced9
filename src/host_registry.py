"""Upstream host registry.

Loads ``HostConfig`` records from a YAML config file once at startup.  The
registry is read-only afterwards and is injected into the proxy handler and
the reconciler.
"""

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from src.core.config import HostConfig


class HostRegistry:
    """Immutable set of configured upstream hosts.

    Args:
        hosts: ``HostConfig`` records, unique by ``host_key``.

    Raises:
        ValueError: On duplicate host keys.
    """

    def __init__(self, hosts: Iterable[HostConfig]) -> None:
        self._hosts: dict[str, HostConfig] = {}
        for host in hosts:
            if host.host_key in self._hosts:
                raise ValueError(f"Duplicate host key '{host.host_key}'")
            self._hosts[host.host_key] = host

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "HostRegistry":
        """Load hosts from a YAML file with a top-level ``hosts:`` list.

        Raises:
            FileNotFoundError: If the YAML file does not exist.
            ValueError: If the YAML is invalid, has no hosts, an entry fails
                        validation, or host keys repeat.
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Host config not found: {path}")

        raw = path.read_text(encoding="utf-8")
        try:
            data: Any = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        if not isinstance(data, dict) or "hosts" not in data:
            raise ValueError(f"YAML must contain a top-level 'hosts' key in {path}")

        hosts_list = data["hosts"]
        if not hosts_list:
            raise ValueError(f"No hosts defined in {path}")

        hosts = []
        for item in hosts_list:
            try:
                hosts.append(HostConfig.model_validate(item))
            except ValidationError as exc:
                name = item.get("host_key", "?") if isinstance(item, dict) else "?"
                raise ValueError(f"Invalid host entry '{name}' in {path}: {exc}") from exc
        return cls(hosts)

    # ── Access ──────────────────────────────────────────────────────

    def get(self, host_key: str) -> HostConfig | None:
        """Return the ``HostConfig`` for *host_key*, or ``None``."""
        return self._hosts.get(host_key)

    def list_all(self) -> list[HostConfig]:
        """Return all configured hosts."""
        return list(self._hosts.values())

    @property
    def host_count(self) -> int:
        return len(self._hosts)

    def host_keys(self) -> set[str]:
        return set(self._hosts.keys())

    def match_path(self, path: str) -> HostConfig | None:
        """Return the host whose ``mapped_path_prefix`` is the longest match for *path*.

        Prefixes match on whole path segments, so ``/proxy/hmrc`` does not
        claim ``/proxy/hmrc-sandbox/...``.
        """
        best: HostConfig | None = None
        for host in self._hosts.values():
            prefix = host.mapped_path_prefix
            if prefix == "/" or not (path == prefix or path.startswith(prefix + "/")):
                continue
            if best is None or len(prefix) > len(best.mapped_path_prefix):
                best = host
        return best
