# http.py
# SPDX-License-Identifier: MIT
"""Stdlib-only keep-alive HTTP client with one connection pool per host.

Senders check a connection out for a single attempt and return it
afterwards; a connection that errored or that the server asked to close is
discarded instead. Retries are the dispatcher's job, so a connection is
never held across attempts.
"""

from __future__ import annotations

import http.client
import queue
import socket
import ssl
import threading
import time
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass, field

from .log import get_logger

log = get_logger(__name__)

__all__ = ["HttpResult", "ConnectionPool", "PooledHttpClient", "RequestTimeout"]


class RequestTimeout(TimeoutError):
    """Raised when an attempt exceeds its first-byte or total deadline."""


@dataclass(frozen=True)
class HttpResult:
    """Fully read response from a single attempt."""

    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    reason: str = ""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class ConnectionPool:
    """Bounded pool of keep-alive connections to one scheme/host/port.

    Args:
        scheme (str): ``http`` or ``https``.
        host (str): Target hostname.
        port (int): Target port.
        maxsize (int): Maximum idle connections retained.
        ssl_context (ssl.SSLContext | None): Context for HTTPS connections.
    """

    def __init__(
        self,
        scheme: str,
        host: str,
        port: int,
        *,
        maxsize: int = 10,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        if scheme not in {"http", "https"}:
            raise ValueError(f"Unsupported URL scheme: {scheme}")
        self.scheme = scheme
        self.host = host
        self.port = port
        self.maxsize = max(1, maxsize)
        self._idle: queue.LifoQueue[http.client.HTTPConnection] = queue.LifoQueue(maxsize=self.maxsize)
        self._ssl_context = ssl_context
        self.created = 0

    def _new_connection(self, timeout: float) -> http.client.HTTPConnection:
        self.created += 1
        if self.scheme == "https":
            context = self._ssl_context or ssl.create_default_context()
            return http.client.HTTPSConnection(self.host, self.port, timeout=timeout, context=context)
        return http.client.HTTPConnection(self.host, self.port, timeout=timeout)

    def checkout(self, timeout: float) -> http.client.HTTPConnection:
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            return self._new_connection(timeout)
        conn.timeout = timeout
        if conn.sock is not None:
            conn.sock.settimeout(timeout)
        return conn

    def checkin(self, conn: http.client.HTTPConnection) -> None:
        try:
            self._idle.put_nowait(conn)
        except queue.Full:
            conn.close()

    def close(self) -> None:
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                return
            conn.close()

    def request(
        self,
        method: str,
        path: str,
        *,
        body: bytes | None,
        headers: Mapping[str, str],
        timeout: float,
        first_byte_timeout: float,
    ) -> HttpResult:
        """Send one request and read the whole response.

        The socket timeout is ``first_byte_timeout`` until response headers
        arrive and the remaining ``timeout`` budget while the body is read.

        Raises:
            RequestTimeout: When either deadline passes.
            OSError | http.client.HTTPException: On connection failures.
        """
        deadline = time.monotonic() + timeout
        conn = self.checkout(min(first_byte_timeout, timeout))
        reusable = False
        try:
            conn.request(method, path, body=body, headers=dict(headers))
            response = conn.getresponse()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(f"{method} {path} exceeded {timeout:.1f}s")
            if conn.sock is not None:
                conn.sock.settimeout(remaining)
            data = response.read()
            reusable = not response.will_close
            return HttpResult(
                status=response.status,
                body=data,
                headers={k: v for k, v in response.getheaders()},
                reason=response.reason,
            )
        except socket.timeout as exc:
            raise RequestTimeout(f"{method} {self.host}{path} timed out: {exc}") from exc
        finally:
            if reusable:
                self.checkin(conn)
            else:
                conn.close()


class PooledHttpClient:
    """Thread-safe client routing requests to per-host connection pools.

    Args:
        pool_size (int): Idle connections kept per host; size it to the
            number of concurrent senders.
        timeout (float): Default total per-attempt timeout in seconds.
        first_byte_timeout (float): Default time-to-first-byte bound.
    """

    def __init__(
        self,
        *,
        pool_size: int = 10,
        timeout: float = 30.0,
        first_byte_timeout: float = 10.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.pool_size = pool_size
        self.timeout = timeout
        self.first_byte_timeout = first_byte_timeout
        self._ssl_context = ssl_context
        self._pools: dict[tuple[str, str, int], ConnectionPool] = {}
        self._lock = threading.Lock()

    def pool_for(self, url: str) -> ConnectionPool:
        parsed = urllib.parse.urlsplit(url)
        scheme = (parsed.scheme or "https").lower()
        host = parsed.hostname
        if not host:
            raise ValueError(f"URL missing host: {url!r}")
        port = parsed.port or (443 if scheme == "https" else 80)
        key = (scheme, host, port)
        with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = ConnectionPool(scheme, host, port, maxsize=self.pool_size, ssl_context=self._ssl_context)
                self._pools[key] = pool
            return pool

    def request(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        first_byte_timeout: float | None = None,
    ) -> HttpResult:
        """Perform a single attempt against ``url``."""
        parsed = urllib.parse.urlsplit(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        pool = self.pool_for(url)
        result = pool.request(
            method.upper(),
            path,
            body=body,
            headers=headers or {},
            timeout=timeout or self.timeout,
            first_byte_timeout=first_byte_timeout or self.first_byte_timeout,
        )
        log.debug("HTTP %s %s status=%s bytes=%d", method.upper(), url, result.status, len(result.body))
        return result

    def close(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.close()

    def __enter__(self) -> PooledHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
