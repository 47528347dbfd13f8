"""Resource loading contract and the failure policy applied to infrastructure faults."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Dict, Mapping, Optional, Protocol, Union

from praxisauth.security.models import ResourceInstance
from praxisauth.security.permissions import ActionLike, Permission, ResourceTypeLike
from praxisauth.utils.errors import ResourceLoaderError, ResourceLoaderTimeout
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


class LoadStatus(Enum):
    NOT_FOUND = "not_found"


NOT_FOUND = LoadStatus.NOT_FOUND

LoadResult = Union[ResourceInstance, LoadStatus]


class ResourceLoader(Protocol):
    """Implemented by the domain layer and injected into the evaluator."""

    async def load(self, resource_type: ResourceTypeLike, resource_id: str) -> LoadResult:
        ...


class FailMode(str, Enum):
    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


class FailurePolicy:
    """Per-permission choice between failing closed and degrading open.

    Lookups try the exact ``resource:action`` key, then ``resource:*``,
    then ``*:action``, before falling back to the default mode.
    """

    def __init__(
        self,
        default: FailMode = FailMode.FAIL_CLOSED,
        overrides: Optional[Mapping[str, FailMode]] = None,
        *,
        loader_timeout: float = 2.0,
    ) -> None:
        self.default = FailMode(default)
        self.loader_timeout = loader_timeout
        self._overrides: Dict[str, FailMode] = {}
        for raw, mode in (overrides or {}).items():
            self._overrides[str(Permission.parse(raw))] = FailMode(mode)

    def mode_for(self, resource_type: ResourceTypeLike, action: ActionLike) -> FailMode:
        permission = Permission(resource_type, action)
        concrete = str(permission)
        resource, _, verb = concrete.partition(":")
        for key in (concrete, f"{resource}:*", f"*:{verb}"):
            if key in self._overrides:
                return self._overrides[key]
        return self.default


async def load_with_timeout(
    loader: ResourceLoader,
    resource_type: ResourceTypeLike,
    resource_id: str,
    timeout: float,
) -> LoadResult:
    """Resolve an instance, turning slow or failing loaders into typed errors."""

    label = f"{getattr(resource_type, 'value', resource_type)}:{resource_id}"
    try:
        return await asyncio.wait_for(loader.load(resource_type, resource_id), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("resource loader timed out", extra={"rule": label})
        raise ResourceLoaderTimeout(f"Loading {label} exceeded {timeout}s") from exc
    except ResourceLoaderError:
        raise
    except Exception as exc:
        logger.exception("resource loader failed", extra={"rule": label})
        raise ResourceLoaderError(f"Loading {label} failed: {exc}") from exc


__all__ = [
    "LoadStatus",
    "NOT_FOUND",
    "LoadResult",
    "ResourceLoader",
    "FailMode",
    "FailurePolicy",
    "load_with_timeout",
]
