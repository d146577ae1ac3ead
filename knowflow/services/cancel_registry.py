"""Shared cancel/pause flags for running executions.

The API process writes the flags; the Celery worker running the execution
polls them between node invocations (see RegistryExecutionControl).

CANCEL_REGISTRY_BACKEND=redis keeps them in Redis (required when API and
workers are separate processes). `memory` keeps them in-process only.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from knowflow.config import settings
from knowflow.core.logging import get_logger
from knowflow.engine.control import ExecutionControl

logger = get_logger("services.cancel_registry")

REDIS_KEY_PREFIX = "knowflow:execution_control:"


@dataclass
class ControlEntry:
    execution_id: str
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    paused: bool = False
    ts: float = 0.0  # last update timestamp

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlEntry":
        return cls(
            execution_id=data.get("execution_id", ""),
            cancel_requested=data.get("cancel_requested", False),
            cancel_reason=data.get("cancel_reason"),
            paused=data.get("paused", False),
            ts=data.get("ts", 0.0),
        )


class InMemoryCancelRegistry:
    """In-memory registry (single-process only)."""

    def __init__(self, ttl_seconds: int = settings.CANCEL_REGISTRY_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._entries: Dict[str, ControlEntry] = {}
        self._lock = asyncio.Lock()

    def _prune_locked(self) -> None:
        now = time.time()
        expired = [k for k, v in self._entries.items() if now - (v.ts or 0.0) > self._ttl]
        for k in expired:
            self._entries.pop(k, None)

    async def get(self, execution_id: str) -> Optional[ControlEntry]:
        async with self._lock:
            self._prune_locked()
            return self._entries.get(execution_id)

    async def clear(self, execution_id: str) -> None:
        async with self._lock:
            self._entries.pop(execution_id, None)

    async def request_cancel(self, execution_id: str, reason: Optional[str] = None) -> None:
        async with self._lock:
            self._prune_locked()
            entry = self._entries.setdefault(execution_id, ControlEntry(execution_id=execution_id))
            entry.cancel_requested = True
            entry.cancel_reason = reason
            entry.ts = time.time()

    async def set_paused(self, execution_id: str, paused: bool) -> None:
        async with self._lock:
            self._prune_locked()
            entry = self._entries.setdefault(execution_id, ControlEntry(execution_id=execution_id))
            entry.paused = paused
            entry.ts = time.time()

    async def close(self) -> None:
        pass


class RedisCancelRegistry:
    """Redis-backed registry for multi-process deployments."""

    def __init__(self, redis_url: str, ttl_seconds: int = settings.CANCEL_REGISTRY_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None
        self._lock = asyncio.Lock()

    def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis connection established for cancel registry")
        return self._redis

    def _key(self, execution_id: str) -> str:
        return f"{REDIS_KEY_PREFIX}{execution_id}"

    async def get(self, execution_id: str) -> Optional[ControlEntry]:
        try:
            data = await self._get_redis().get(self._key(execution_id))
            if data:
                return ControlEntry.from_dict(json.loads(data))
            return None
        except RedisError as e:
            logger.warning(f"Redis get failed: {e}")
            return None

    async def clear(self, execution_id: str) -> None:
        try:
            await self._get_redis().delete(self._key(execution_id))
        except RedisError as e:
            logger.warning(f"Redis delete failed: {e}")

    async def _save_entry(self, entry: ControlEntry) -> None:
        await self._get_redis().setex(
            self._key(entry.execution_id),
            self._ttl,
            json.dumps(entry.to_dict()),
        )

    async def request_cancel(self, execution_id: str, reason: Optional[str] = None) -> None:
        async with self._lock:
            entry = await self.get(execution_id) or ControlEntry(execution_id=execution_id)
            entry.cancel_requested = True
            entry.cancel_reason = reason
            entry.ts = time.time()
            await self._save_entry(entry)
            logger.debug(
                "Marked cancel requested in Redis",
                extra={"execution_id": execution_id, "reason": reason},
            )

    async def set_paused(self, execution_id: str, paused: bool) -> None:
        async with self._lock:
            entry = await self.get(execution_id) or ControlEntry(execution_id=execution_id)
            entry.paused = paused
            entry.ts = time.time()
            await self._save_entry(entry)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


CancelRegistry = InMemoryCancelRegistry | RedisCancelRegistry


def create_cancel_registry() -> CancelRegistry:
    """Create the appropriate registry based on configuration."""
    if settings.CANCEL_REGISTRY_BACKEND == "redis":
        return RedisCancelRegistry(settings.REDIS_URL)
    logger.warning(
        "Using in-memory cancel registry. "
        "Cancel and pause requests will NOT reach other processes!"
    )
    return InMemoryCancelRegistry()


_registry: Optional[CancelRegistry] = None


def get_cancel_registry() -> CancelRegistry:
    """Process-wide registry, used as a FastAPI dependency."""
    global _registry
    if _registry is None:
        _registry = create_cancel_registry()
    return _registry


class RegistryExecutionControl(ExecutionControl):
    """ExecutionControl whose flags are refreshed from a cancel registry."""

    def __init__(self, registry: CancelRegistry, execution_id: str):
        super().__init__()
        self.registry = registry
        self.execution_id = execution_id

    async def refresh(self) -> None:
        entry = await self.registry.get(self.execution_id)
        if entry is None:
            return
        if entry.cancel_requested:
            self.cancel(entry.cancel_reason)
        elif entry.paused:
            self.pause()
        else:
            self.resume()
