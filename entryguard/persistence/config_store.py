# entryguard/persistence/config_store.py
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Tuple

from entryguard.core.ttl_cache import TTLCache
from entryguard.persistence.db import DB, utc_now_iso
from entryguard.policy.monitor_config import MonitorConfig, parse_config

log = logging.getLogger("entryguard.config_store")

GLOBAL_SCOPE = "global"


def _scope(owner_id: Optional[int]) -> str:
    return GLOBAL_SCOPE if owner_id is None else f"owner:{int(owner_id)}"


class ConfigStore:
    """
    Threshold sets, global plus optional per-owner overrides.

    Resolution: owner override -> global row -> built-in defaults.
    A missing row is never an error. Values are validated on write only.
    """

    def __init__(self, db: DB, cache: Optional[TTLCache] = None):
        self.db = db
        self.cache = cache if cache is not None else TTLCache(30.0)

    def _load(self, scope: str) -> Optional[MonitorConfig]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT config_json FROM monitor_configs WHERE scope = ?", (scope,)
            ).fetchone()
        if not row:
            return None
        return MonitorConfig.model_validate(json.loads(row["config_json"]))

    def resolve(self, owner_id: Optional[int] = None) -> Tuple[MonitorConfig, str]:
        """Effective config and the scope it came from ('owner:<id>', 'global' or 'default')."""
        key = _scope(owner_id)
        hit = self.cache.get(key)
        if hit is not None:
            return hit

        resolved: Optional[Tuple[MonitorConfig, str]] = None
        if owner_id is not None:
            cfg = self._load(key)
            if cfg is not None:
                resolved = (cfg, key)
            else:
                log.debug("no config override for owner %s, using global", owner_id)

        if resolved is None:
            cfg = self._load(GLOBAL_SCOPE)
            resolved = (cfg, GLOBAL_SCOPE) if cfg is not None else (MonitorConfig(), "default")

        self.cache.set(key, resolved)
        return resolved

    def get(self, owner_id: Optional[int] = None) -> MonitorConfig:
        return self.resolve(owner_id)[0]

    def get_override(self, owner_id: int) -> Optional[MonitorConfig]:
        return self._load(_scope(owner_id))

    def put(
        self, payload: Mapping[str, Any] | MonitorConfig, owner_id: Optional[int] = None
    ) -> MonitorConfig:
        """Validate and store; raises InvalidConfigError naming the field."""
        cfg = parse_config(payload)
        scope = _scope(owner_id)

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO monitor_configs(scope, owner_id, config_json, updated_at)
                VALUES (?,?,?,?)
                ON CONFLICT(scope) DO UPDATE SET
                    config_json=excluded.config_json,
                    updated_at=excluded.updated_at
                """,
                (scope, owner_id, json.dumps(cfg.model_dump()), utc_now_iso()),
            )

        # a global write changes every owner's fallback
        if owner_id is None:
            self.cache.invalidate()
        else:
            self.cache.invalidate(scope)

        log.info("monitor config updated scope=%s", scope)
        return cfg

    def delete_override(self, owner_id: int) -> bool:
        scope = _scope(owner_id)
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM monitor_configs WHERE scope = ?", (scope,))
        self.cache.invalidate(scope)
        return cur.rowcount > 0
