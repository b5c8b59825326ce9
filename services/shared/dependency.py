"""
Shared - Dependency Caller

Every cross-service call goes through here. One outbound HTTP request with
an explicit deadline, and every way it can end is folded into a single
DependencyOutcome value instead of an exception:

  2xx                       -> SUCCESS (parsed JSON body)
  404                       -> NOT_FOUND
  other non-2xx             -> UPSTREAM_ERROR (status + body)
  connection refused / DNS  -> UNAVAILABLE
  deadline exceeded         -> TIMEOUT
  anything else             -> UNKNOWN_FAILURE

There are two call categories:

  request()      required call. The caller gets the outcome and must
                 classify it (see classify.py).
  best_effort()  side-effect or enrichment call. Failures are logged and
                 swallowed, the caller only ever sees a payload or the
                 fallback value.

No retries happen here.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    UPSTREAM_ERROR = "upstream_error"
    UNKNOWN_FAILURE = "unknown_failure"


@dataclass(frozen=True)
class DependencyOutcome:
    """Result of one dependency call."""

    dependency: str
    kind: OutcomeKind
    payload: Any = None
    status_code: int | None = None
    body: Any = None
    cause: str | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_server_fault(self) -> bool:
        """True when the dependency itself misbehaved (not a business answer)."""
        if self.kind in (
            OutcomeKind.UNAVAILABLE,
            OutcomeKind.TIMEOUT,
            OutcomeKind.UNKNOWN_FAILURE,
        ):
            return True
        return (
            self.kind is OutcomeKind.UPSTREAM_ERROR
            and self.status_code is not None
            and self.status_code >= 500
        )

    def error_detail(self) -> dict:
        return {
            "kind": self.kind.value,
            "statusCode": self.status_code,
            "message": self.cause,
        }


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class DependencyCaller:
    """Guarded outbound HTTP calls over a shared httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient, metrics=None) -> None:
        self.client = client
        self.metrics = metrics

    async def request(
        self,
        dependency: str,
        method: str,
        url: str,
        *,
        timeout: float,
        json: Any = None,
        params: dict | None = None,
    ) -> DependencyOutcome:
        started = time.perf_counter()
        try:
            # The transport timeout covers each phase; wait_for bounds the whole call.
            response = await asyncio.wait_for(
                self.client.request(
                    method, url, json=json, params=params, timeout=timeout
                ),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            outcome = DependencyOutcome(
                dependency,
                OutcomeKind.TIMEOUT,
                cause=f"no response within {int(timeout * 1000)}ms",
            )
        except httpx.ConnectError as exc:
            outcome = DependencyOutcome(
                dependency, OutcomeKind.UNAVAILABLE, cause=str(exc) or "connect error"
            )
        except Exception as exc:
            outcome = DependencyOutcome(
                dependency,
                OutcomeKind.UNKNOWN_FAILURE,
                cause=f"{type(exc).__name__}: {exc}",
            )
        else:
            body = _parse_body(response)
            if response.is_success:
                outcome = DependencyOutcome(
                    dependency,
                    OutcomeKind.SUCCESS,
                    payload=body,
                    status_code=response.status_code,
                )
            elif response.status_code == 404:
                outcome = DependencyOutcome(
                    dependency,
                    OutcomeKind.NOT_FOUND,
                    status_code=404,
                    body=body,
                    cause="not found",
                )
            else:
                outcome = DependencyOutcome(
                    dependency,
                    OutcomeKind.UPSTREAM_ERROR,
                    status_code=response.status_code,
                    body=body,
                    cause=f"HTTP {response.status_code}",
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        outcome = replace(outcome, elapsed_ms=elapsed_ms)
        if self.metrics is not None:
            self.metrics.observe_dependency(outcome)
        if outcome.ok:
            logger.debug(
                "%s %s %s -> %s in %.1fms",
                dependency, method, url, outcome.status_code, elapsed_ms,
            )
        else:
            logger.info(
                "%s %s %s failed: %s (%s) in %.1fms",
                dependency, method, url, outcome.kind.value, outcome.cause, elapsed_ms,
            )
        return outcome

    async def best_effort(
        self,
        dependency: str,
        method: str,
        url: str,
        *,
        timeout: float,
        json: Any = None,
        params: dict | None = None,
        fallback: Any = None,
    ) -> Any:
        outcome = await self.request(
            dependency, method, url, timeout=timeout, json=json, params=params
        )
        if outcome.ok:
            return outcome.payload
        logger.warning(
            "Best-effort call to %s failed (%s: %s), using fallback",
            dependency, outcome.kind.value, outcome.cause,
        )
        return fallback
