"""
Tracks the known etcd endpoints and the currently selected one.
"""

from __future__ import annotations

import logging
from typing import AbstractSet, Iterable, List, Optional, Tuple

from .errors import NoEndpointsAvailable
from .types import HostPortPair

__all__ = (
    'EndpointPool',
)

log = logging.getLogger(__name__)


class EndpointPool:
    """
    Sticky-until-failure endpoint selection.

    The active endpoint is reused for every call until a call against it fails;
    the next selection then walks the endpoint list round-robin, skipping the
    endpoints the caller has already tried.
    Connections are not opened here; channels are created lazily on first use.
    """
    _endpoints: List[HostPortPair]
    _active: Optional[HostPortPair]
    _cursor: int

    def __init__(self, endpoints: Iterable[HostPortPair] = ()) -> None:
        self._endpoints = []
        self._active = None
        self._cursor = 0
        self.update(endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def __contains__(self, endpoint: object) -> bool:
        return endpoint in self._endpoints

    @property
    def endpoints(self) -> Tuple[HostPortPair, ...]:
        return tuple(self._endpoints)

    @property
    def active(self) -> Optional[HostPortPair]:
        return self._active

    def update(self, endpoints: Iterable[HostPortPair]) -> None:
        """
        Replaces the tracked endpoint set.
        If the active endpoint is no longer part of it, the next `select()` picks anew.
        """
        self._endpoints = list(dict.fromkeys(endpoints))
        if self._active is not None and self._active not in self._endpoints:
            log.info('active endpoint %s removed from the pool', self._active)
            self._active = None
        if self._endpoints:
            self._cursor %= len(self._endpoints)
        else:
            self._cursor = 0

    def select(self, exclude: AbstractSet[HostPortPair] = frozenset()) -> HostPortPair:
        """
        Returns the endpoint the next call should use.

        Raises
        ------
        NoEndpointsAvailable
            When the pool is empty or every endpoint is in `exclude`.
        """
        if not self._endpoints:
            raise NoEndpointsAvailable('endpoint list is empty')
        active = self._active
        if active is not None and active not in exclude:
            return active
        count = len(self._endpoints)
        for offset in range(count):
            index = (self._cursor + offset) % count
            candidate = self._endpoints[index]
            if candidate in exclude:
                continue
            # Only install the candidate if nobody else changed the selection meanwhile.
            if self._active is active:
                self._active = candidate
                self._cursor = (index + 1) % count
            if candidate != active:
                log.debug('selected endpoint %s', candidate)
            return candidate
        raise NoEndpointsAvailable(
            f'all {count} endpoint(s) already tried: {", ".join(map(str, self._endpoints))}')

    def mark_failed(self, endpoint: HostPortPair) -> None:
        """
        Reports a failed call against `endpoint`, forcing re-selection if it is the active one.
        """
        if self._active == endpoint:
            log.info('endpoint %s failed, selecting another one on next use', endpoint)
            self._active = None
            if endpoint in self._endpoints:
                self._cursor = (self._endpoints.index(endpoint) + 1) % len(self._endpoints)
