"""Lease store client for the GitHub contents API.

The lease record is one JSON file in the coordination repository. Every
write and delete carries the blob ``sha`` we last read; the remote rejects
the request when the file changed in between, which is the only mechanism
enforcing "one writer at a time" across hosts.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Protocol

import httpx

from worldsync.core.config import SyncConfig
from worldsync.core.errors import (
    LeaseConflictError,
    RemoteRejectedError,
    RemoteUnavailableError,
)
from worldsync.core.retry import Deadline, RetryPolicy, call_with_retry
from worldsync.lease.models import LeaseRecord, StoredLease

logger = logging.getLogger(__name__)

CONFLICT_STATUSES = {409, 422}


class LeaseStore(Protocol):
    """Conditional read/write/delete of the single lease record."""

    def read(self, deadline: Deadline | None = None) -> StoredLease | None: ...

    def write(
        self,
        record: LeaseRecord,
        version: str | None,
        message: str,
        deadline: Deadline | None = None,
    ) -> str: ...

    def delete(self, version: str, message: str, deadline: Deadline | None = None) -> bool: ...

    def close(self) -> None: ...


class _TransientStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (_TransientStatus, httpx.TransportError))


def _orphaned_placeholder(raw: str) -> LeaseRecord:
    epoch = datetime.fromtimestamp(0, tz=timezone.utc)
    return LeaseRecord(
        held=True,
        holder_label="unknown",
        holder_id="unknown",
        acquired_at=epoch,
        expires_at=epoch,
        reason=f"unreadable lock record ({len(raw)} bytes)",
    )


class ContentsLeaseStore:
    """LeaseStore backed by ``/repos/{owner}/{repo}/contents/{path}``."""

    def __init__(
        self,
        config: SyncConfig,
        client: httpx.Client | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.url = config.contents_url
        self.policy = policy or RetryPolicy(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
        )
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = client or httpx.Client(headers=headers, timeout=config.request_timeout)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, operation: str, deadline: Deadline | None, **kwargs) -> httpx.Response:
        def attempt() -> httpx.Response:
            timeout = self.config.request_timeout
            if deadline is not None:
                timeout = deadline.cap(timeout)
            response = self._client.request(method, self.url, timeout=timeout, **kwargs)
            if response.status_code >= 500 or response.status_code == 429:
                raise _TransientStatus(response)
            return response

        try:
            response = call_with_retry(
                attempt,
                policy=self.policy,
                is_transient=_is_transient,
                deadline=deadline,
                operation=f"lease {operation}",
            )
        except _TransientStatus as exc:
            raise RemoteUnavailableError(
                f"Lease {operation} failed: HTTP {exc.response.status_code}",
                operation=operation,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"Lease {operation} failed: {exc}", operation=operation) from exc

        if response.status_code in (401, 403):
            raise RemoteRejectedError(
                f"Lease {operation} refused by remote (HTTP {response.status_code}); check the access token",
                operation=operation,
                status_code=response.status_code,
            )
        return response

    # ------------------------------------------------------------------
    # LeaseStore
    # ------------------------------------------------------------------

    def read(self, deadline: Deadline | None = None) -> StoredLease | None:
        """
        Fetch the lease record.

        Returns:
            StoredLease, or None when no record exists (lease free)
        """
        response = self._request("GET", "read", deadline, params={"ref": self.config.branch})
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RemoteRejectedError(
                f"Unexpected response reading lease: HTTP {response.status_code}",
                operation="read",
                status_code=response.status_code,
            )

        body = response.json()
        version = str(body["sha"])
        raw = base64.b64decode(body.get("content", "")).decode("utf-8", errors="replace")
        try:
            record = LeaseRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            # Nobody can honour a record nobody can read; expose it as orphaned.
            logger.warning("Lease record at %s is unreadable (%s); treating it as expired", self.config.lock_path, exc)
            record = _orphaned_placeholder(raw)
        return StoredLease(record=record, version=version)

    def write(
        self,
        record: LeaseRecord,
        version: str | None,
        message: str,
        deadline: Deadline | None = None,
    ) -> str:
        """
        Create (``version=None``) or replace the lease record.

        Returns:
            Version token of the written record

        Raises:
            LeaseConflictError: The record changed since ``version`` was read
        """
        content = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        payload: dict[str, object] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.config.branch,
        }
        if version:
            payload["sha"] = version

        response = self._request("PUT", "write", deadline, json=payload)
        if response.status_code in CONFLICT_STATUSES:
            raise LeaseConflictError(f"Lease record changed concurrently (HTTP {response.status_code})")
        if response.status_code not in (200, 201):
            raise RemoteRejectedError(
                f"Unexpected response writing lease: HTTP {response.status_code}",
                operation="write",
                status_code=response.status_code,
            )
        return str(response.json()["content"]["sha"])

    def delete(self, version: str, message: str, deadline: Deadline | None = None) -> bool:
        """
        Delete the lease record.

        Returns:
            True if deleted, False if it was already absent

        Raises:
            LeaseConflictError: The record changed since ``version`` was read
        """
        payload = {"message": message, "sha": version, "branch": self.config.branch}
        response = self._request("DELETE", "delete", deadline, json=payload)
        if response.status_code == 404:
            return False
        if response.status_code in CONFLICT_STATUSES:
            raise LeaseConflictError(f"Lease record changed concurrently (HTTP {response.status_code})")
        if response.status_code != 200:
            raise RemoteRejectedError(
                f"Unexpected response deleting lease: HTTP {response.status_code}",
                operation="delete",
                status_code=response.status_code,
            )
        return True


__all__ = ["ContentsLeaseStore", "LeaseStore"]
