#!/usr/bin/env python3
"""
tms_load.py
===========
Async load generator for the TMS service with:
- independent virtual users, each owning a private, bounded connection pool,
- weighted or round-robin scenario selection (seedable for reproducible runs),
- staggered ramp-up and a bounded grace period at shutdown,
- human-readable progress tables and a per-transaction results breakdown,
- credentials resolved once from the environment and redacted when echoed.

Notes
-----
* HTTP status codes are **data**, not failures. A 500 is a *received* response;
  only transport and body-read problems count as failures.
* Latency percentiles (p50/p95/p99) are computed **only from received responses**.
  Failures are still counted in throughput and broken down by error kind.
* A missing credential is fatal: the run is stopped in order and the process
  exits with status 2.
"""
from __future__ import annotations

import argparse
import asyncio
import enum
import itertools
import os
import random
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import aiohttp
from aiohttp import ClientSession, TCPConnector
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TENANT: str = "X_TMS_TENANT"
CLIENT_ID: str = "X_TMS_CLIENT_ID"
CLIENT_SECRET: str = "X_TMS_CLIENT_SECRET"
ADMIN_ID: str = "X_TMS_ADMIN_ID"
ADMIN_SECRET: str = "X_TMS_ADMIN_SECRET"
CREDENTIAL_KEYS: Tuple[str, ...] = (TENANT, CLIENT_ID, CLIENT_SECRET, ADMIN_ID, ADMIN_SECRET)
SECRET_KEYS = frozenset({CLIENT_SECRET, ADMIN_SECRET})

VERBOSE: str = "TMS_VERBOSE"
PARSE_RESPONSE: str = "TMS_PARSE_RESPONSE"

CLIENT_PATH: str = "v1/tms/client/{client_id}"
VERSION_PATH: str = "v1/tms/version"

# Config key -> header sent to tenant-authenticated endpoints.
_AUTH_HEADERS: Tuple[Tuple[str, str], ...] = (
    (TENANT, "X-TMS-TENANT"),
    (CLIENT_ID, "X-TMS-CLIENT-ID"),
    (CLIENT_SECRET, "X-TMS-CLIENT-SECRET"),
)
_JSON = "application/json"
_REDACTED = "******"

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class FatalConfigurationError(KeyError):
    """
    A required configuration key is absent.

    Raised at first use of the key (never at load time). It is the only error
    that escapes the engine: the attack stops every user and re-raises it.
    """

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"missing required configuration key {self.key}"


class ErrorKind(str, enum.Enum):
    """Failure classification carried by a TransactionOutcome."""
    TRANSPORT = "TransportError"
    RESPONSE_READ = "ResponseReadError"
    TRANSACTION = "TransactionError"

# ---------------------------------------------------------------------------
# Pretty table / console sink
# ---------------------------------------------------------------------------
def _format_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    """
    Render a simple monospace table from headers + rows.

    Parameters
    ----------
    headers : Sequence[str]
        Column headers to display.
    rows : Sequence[Sequence[Any]]
        One sequence per row; missing trailing cells render empty.

    Returns
    -------
    str
        Multiline string with an ASCII table.
    """
    cols = len(headers)
    widths = [len(h) for h in headers]
    for row in rows:
        for i in range(cols):
            widths[i] = max(widths[i], len(_cell(row, i)))

    # Separator mirrors column widths (+2 for padding around each cell)
    sep = "+".join("-" * (w + 2) for w in widths)
    lines = [" | ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers)), sep]
    for row in rows:
        lines.append(" | ".join(_cell(row, i).ljust(widths[i]) for i in range(cols)))
    return "\n".join(lines)


def _cell(row: Sequence[Any], i: int) -> str:
    if i >= len(row) or row[i] is None:
        return ""
    return str(row[i])


class ConsoleSink:
    """
    Tagged console output: ``[INFO]``, ``[WARN]`` and ``[VERBOSE]`` go to stdout,
    ``[ERROR]`` and ``[FATAL]`` to stderr.

    Anything exposing ``info/warn/error/verbose/table`` can stand in for it
    (tests pass a recorder).
    """

    def info(self, msg: str) -> None:
        print(f"[INFO] {msg}")

    def warn(self, msg: str) -> None:
        print(f"[WARN] {msg}")

    def error(self, msg: str) -> None:
        print(f"[ERROR] {msg}", file=sys.stderr)

    def fatal(self, msg: str) -> None:
        print(f"[FATAL] {msg}", file=sys.stderr)

    def verbose(self, msg: str) -> None:
        print(f"[VERBOSE] {msg}")

    def table(self, title: str, rows: Sequence[Sequence[Any]],
              headers: Sequence[str] = ("Metric", "Value")) -> None:
        print(f"\n[{title}]\n" + _format_table(headers, rows))

# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------
def _flag(value: Optional[str]) -> bool:
    # Only the exact literal "false" switches a flag off; absent means "false".
    return (value if value is not None else "false") != "false"


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Immutable process-wide configuration resolved from the environment.

    Attributes
    ----------
    credentials : Mapping[str, str]
        Read-only mapping of the credential keys that were present and non-empty.
        Absent keys are *missing*, never stored as "".
    verbose : bool
        Surface per-transaction diagnostics (failures, parsed bodies).
    parse_response : bool
        Materialize response bodies instead of draining them.
    """
    credentials: Mapping[str, str] = field(default_factory=dict)
    verbose: bool = False
    parse_response: bool = False

    def __post_init__(self) -> None:
        kept = {k: v for k, v in self.credentials.items() if v}
        object.__setattr__(self, "credentials", MappingProxyType(kept))

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "RuntimeConfig":
        """Build a RuntimeConfig from `environ` (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        return RuntimeConfig(
            credentials={k: env[k] for k in CREDENTIAL_KEYS if env.get(k)},
            verbose=_flag(env.get(VERBOSE)),
            parse_response=_flag(env.get(PARSE_RESPONSE)),
        )

    def get(self, key: str) -> Optional[str]:
        return self.credentials.get(key)

    def require(self, key: str) -> str:
        """Return the value for `key` or raise FatalConfigurationError."""
        value = self.credentials.get(key)
        if value is None:
            raise FatalConfigurationError(key)
        return value

    def redacted(self) -> Dict[str, str]:
        """Echo-safe view of the configuration with secret values masked."""
        out = {k: (_REDACTED if k in SECRET_KEYS else v) for k, v in self.credentials.items()}
        out[VERBOSE] = str(self.verbose).lower()
        out[PARSE_RESPONSE] = str(self.parse_response).lower()
        return out


_runtime_config: Optional[RuntimeConfig] = None
_runtime_config_lock = threading.Lock()


def load_runtime_config() -> RuntimeConfig:
    """
    Resolve the RuntimeConfig from ``os.environ`` once and cache it.

    Concurrent first calls converge on a single instance; later calls return
    that instance regardless of environment changes.
    """
    global _runtime_config
    if _runtime_config is None:
        with _runtime_config_lock:
            if _runtime_config is None:
                _runtime_config = RuntimeConfig.from_env()
    return _runtime_config


def reset_runtime_config() -> None:
    """Drop the cached RuntimeConfig (test helper)."""
    global _runtime_config
    with _runtime_config_lock:
        _runtime_config = None

# ---------------------------------------------------------------------------
# Requests & outcomes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RequestSpec:
    """A fully specified outbound request; a value, never mutated."""
    method: str
    url: str
    headers: Mapping[str, str]
    body: Optional[bytes] = None


@dataclass(frozen=True)
class TransactionOutcome:
    """
    Result of one request/response round trip.

    Attributes
    ----------
    name : str
        Transaction name the outcome is reported under.
    ok : bool
        True when a response was received (whatever its status code).
    elapsed : float
        Round-trip duration in seconds, body drain or read included.
    status : Optional[int]
        HTTP status, None when no response arrived.
    error : Optional[ErrorKind]
        Failure classification, None when ok.
    body : Optional[str]
        Response text, only captured when parse-response is enabled.
    detail : str
        Error message for failed outcomes.
    """
    name: str
    ok: bool
    elapsed: float
    status: Optional[int] = None
    error: Optional[ErrorKind] = None
    body: Optional[str] = None
    detail: str = ""


def _join_url(base_url: str, path: str) -> str:
    if not base_url:
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def build_request(
    method: str,
    path: str,
    config: RuntimeConfig,
    *,
    base_url: str = "",
    auth: bool = True,
    body: Optional[Any] = None,
) -> RequestSpec:
    """
    Build the RequestSpec for one transaction step.

    Parameters
    ----------
    method : str
        HTTP method (case-insensitive).
    path : str
        Path relative to `base_url`; a leading slash is optional.
    config : RuntimeConfig
        Source of the tenant credentials.
    base_url : str
        Target root URL.
    auth : bool
        Attach the tenant identification headers. Unauthenticated endpoints
        (the version probe) never consult the credential keys.
    body : Optional[bytes | str]
        Request payload; str is UTF-8 encoded.

    Returns
    -------
    RequestSpec

    Raises
    ------
    FatalConfigurationError
        When `auth` is set and a tenant credential is absent. No partial
        request is ever produced.
    """
    headers: Dict[str, str] = {}
    if auth:
        for key, header in _AUTH_HEADERS:
            headers[header] = config.require(key)
        headers["Content-Type"] = _JSON
    elif body is not None:
        headers["Content-Type"] = _JSON
    if isinstance(body, str):
        body = body.encode("utf-8")
    return RequestSpec(
        method=method.upper(),
        url=_join_url(base_url, path),
        headers=MappingProxyType(headers),
        body=body,
    )


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def _consume_body(resp: aiohttp.ClientResponse, parse: bool) -> Optional[str]:
    """Read the body as text when parsing, otherwise drain it chunk by chunk."""
    if parse:
        return await resp.text(errors="replace")
    while await resp.content.readany():
        pass
    return None


async def execute(
    spec: RequestSpec,
    session: ClientSession,
    config: RuntimeConfig,
    *,
    name: str = "",
    sink: Optional[Any] = None,
) -> TransactionOutcome:
    """
    Issue `spec` over `session` and classify the result.

    Any status code counts as received. Connection, TLS, DNS and timeout errors
    give ``TransportError``; a failure while reading or draining the body
    gives ``ResponseReadError`` (status kept). It is reported separately but
    recovered exactly like ``TransportError``.
    """
    t0 = time.monotonic()
    status: Optional[int] = None
    try:
        async with session.request(
            spec.method, spec.url, headers=dict(spec.headers), data=spec.body
        ) as resp:
            status = resp.status
            try:
                body = await _consume_body(resp, config.parse_response)
            except _TRANSPORT_ERRORS as e:
                return TransactionOutcome(
                    name=name, ok=False, elapsed=time.monotonic() - t0, status=status,
                    error=ErrorKind.RESPONSE_READ, detail=_describe(e),
                )
    except _TRANSPORT_ERRORS as e:
        return TransactionOutcome(
            name=name, ok=False, elapsed=time.monotonic() - t0, status=status,
            error=ErrorKind.TRANSPORT, detail=_describe(e),
        )

    dt = time.monotonic() - t0
    if body is not None and config.verbose and sink is not None:
        sink.verbose(f"{name} {spec.method} {spec.url} -> {status}: {body}")
    return TransactionOutcome(name=name, ok=True, elapsed=dt, status=status, body=body)

# ---------------------------------------------------------------------------
# Stats aggregation
# ---------------------------------------------------------------------------
@dataclass
class Metrics:
    """
    Single-owner accumulator for transaction outcomes.

    Notes
    -----
    * `latencies` stores durations of *received* responses **in seconds**.
    * `status_codes` counts received responses only, so it always sums to `received`.
    * Each virtual user owns one; the attack merges them after the user is done,
      so the hot path never needs a lock.
    """
    total: int = 0
    received: int = 0
    failures: Counter = field(default_factory=Counter)
    status_codes: Counter = field(default_factory=Counter)
    latencies: List[float] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.total - self.received

    def record(self, outcome: TransactionOutcome) -> None:
        self.total += 1
        if outcome.ok:
            self.received += 1
            if outcome.status is not None:
                self.status_codes[outcome.status] += 1
            self.latencies.append(outcome.elapsed)
        elif outcome.error is not None:
            self.failures[outcome.error.value] += 1

    def merge(self, other: "Metrics") -> None:
        self.total += other.total
        self.received += other.received
        self.failures.update(other.failures)
        self.status_codes.update(other.status_codes)
        self.latencies.extend(other.latencies)

    def percentiles(self, ps: Sequence[int]) -> Tuple[Optional[int], ...]:
        """
        Compute percentiles from the received-response latencies.

        Parameters
        ----------
        ps : Sequence[int]
            Percentile integers (e.g., [50, 95, 99]).

        Returns
        -------
        Tuple[Optional[int], ...]
            Percentiles in **milliseconds** (Nones if no samples yet).
        """
        if not self.latencies:
            return tuple(None for _ in ps)
        xs = sorted(self.latencies)
        out: List[int] = []
        for p in ps:
            # Index rounding strategy keeps endpoints stable for small samples.
            k = max(0, min(len(xs) - 1, int(round((p / 100.0) * (len(xs) - 1)))))
            out.append(int(xs[k] * 1000))
        return tuple(out)


def _status_summary(codes: Mapping[int, int]) -> str:
    return " ".join(f"{code}:{n}" for code, n in sorted(codes.items()))


@dataclass
class AggregateReport:
    """
    Merged view of a run: totals, per-transaction breakdown, user accounting.
    """
    totals: Metrics = field(default_factory=Metrics)
    by_transaction: Dict[str, Metrics] = field(default_factory=dict)
    users_started: int = 0
    users_abandoned: int = 0
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    def merge(self, metrics: Metrics, by_transaction: Mapping[str, Metrics]) -> None:
        self.totals.merge(metrics)
        for name, m in by_transaction.items():
            self.by_transaction.setdefault(name, Metrics()).merge(m)

    def finish(self) -> None:
        self.finished_at = time.monotonic()

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0001, end - self.started_at)

    def snapshot(self) -> Dict[str, Any]:
        """
        Produce a plain-dict view of counters and percentiles.

        Returns
        -------
        Dict[str, Any]
            Elapsed seconds, observed RPM, totals, failures by kind, status code
            counts and p50/p95/p99 in milliseconds (None without samples).
        """
        p50, p95, p99 = self.totals.percentiles([50, 95, 99])
        return {
            "elapsed_sec": round(self.elapsed, 1),
            "users_started": self.users_started,
            "users_abandoned": self.users_abandoned,
            "observed_rpm": round(self.totals.total / (self.elapsed / 60.0), 1),
            "total": self.totals.total,
            "received": self.totals.received,
            "failures": self.totals.failed,
            "failures_by_kind": {k.value: self.totals.failures.get(k.value, 0) for k in ErrorKind},
            "status_codes": dict(sorted(self.totals.status_codes.items())),
            "latency_ms_p50": p50,
            "latency_ms_p95": p95,
            "latency_ms_p99": p99,
        }

    def rows(self) -> List[Tuple[str, Any]]:
        snap = self.snapshot()
        rows: List[Tuple[str, Any]] = [
            ("Elapsed (s)", snap["elapsed_sec"]),
            ("Users (started)", snap["users_started"]),
            ("Users (abandoned)", snap["users_abandoned"]),
            ("Observed RPM", snap["observed_rpm"]),
            ("Total", snap["total"]),
            ("Received", snap["received"]),
            ("Failures", snap["failures"]),
        ]
        rows += [(f"  {kind}", n) for kind, n in snap["failures_by_kind"].items()]
        rows += [
            ("Status codes", _status_summary(snap["status_codes"])),
            ("p50 (ms)", snap["latency_ms_p50"]),
            ("p95 (ms)", snap["latency_ms_p95"]),
            ("p99 (ms)", snap["latency_ms_p99"]),
        ]
        return rows

    def transaction_rows(self) -> List[Tuple[Any, ...]]:
        rows = []
        for name in sorted(self.by_transaction):
            m = self.by_transaction[name]
            rows.append((name, m.total, m.received, m.failed,
                         _status_summary(m.status_codes), *m.percentiles([50, 95, 99])))
        return rows


TRANSACTION_HEADERS = ["Transaction", "Requests", "Received", "Failures",
                       "Status codes", "p50 (ms)", "p95 (ms)", "p99 (ms)"]

# ---------------------------------------------------------------------------
# Scenarios & selection
# ---------------------------------------------------------------------------
TransactionFn = Callable[["VirtualUser"], Awaitable[TransactionOutcome]]


@dataclass(frozen=True)
class Transaction:
    """A named async step: ``(VirtualUser) -> TransactionOutcome``."""
    name: str
    fn: TransactionFn

    async def __call__(self, user: "VirtualUser") -> TransactionOutcome:
        return await self.fn(user)


def transaction(fn: TransactionFn, name: Optional[str] = None) -> Transaction:
    """Wrap `fn` as a Transaction named after the function unless `name` is given."""
    return Transaction(name=name or fn.__name__, fn=fn)


@dataclass(frozen=True)
class Scenario:
    """
    An ordered sequence of transactions with a relative selection weight.
    """
    name: str
    transactions: Tuple[Transaction, ...]
    weight: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "transactions", tuple(self.transactions))
        if not self.transactions:
            raise ValueError(f"Scenario '{self.name}' has no transactions")
        if self.weight < 1:
            raise ValueError(f"Scenario '{self.name}' weight must be >= 1, got {self.weight}")


class ScenarioSelector:
    """Picks the next scenario a virtual user runs."""

    def __init__(self, scenarios: Sequence[Scenario], seed: Optional[int] = None) -> None:
        if not scenarios:
            raise ValueError("At least one scenario is required")
        self.scenarios = list(scenarios)
        self.seed = seed

    def next(self) -> Scenario:
        raise NotImplementedError


class WeightedSelector(ScenarioSelector):
    """Weighted random draw; a fixed seed gives a fixed sequence."""

    def __init__(self, scenarios: Sequence[Scenario], seed: Optional[int] = None) -> None:
        super().__init__(scenarios, seed)
        self._weights = [s.weight for s in self.scenarios]
        self._rng = random.Random(seed)

    def next(self) -> Scenario:
        return self._rng.choices(self.scenarios, weights=self._weights, k=1)[0]


class RoundRobinSelector(ScenarioSelector):
    """
    Cycle scenarios in registration order, each repeated `weight` times.

    A seed rotates the starting point so users don't all begin in step.
    """

    def __init__(self, scenarios: Sequence[Scenario], seed: Optional[int] = None) -> None:
        super().__init__(scenarios, seed)
        expanded = [s for s in self.scenarios for _ in range(s.weight)]
        offset = seed % len(expanded) if seed is not None else 0
        self._cycle = itertools.cycle(expanded[offset:] + expanded[:offset])

    def next(self) -> Scenario:
        return next(self._cycle)


SELECTORS: Dict[str, Callable[..., ScenarioSelector]] = {
    "weighted": WeightedSelector,
    "round-robin": RoundRobinSelector,
}

# ---------------------------------------------------------------------------
# Virtual user
# ---------------------------------------------------------------------------
class UserState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


OutcomeListener = Callable[[int, TransactionOutcome], None]


async def _wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout` seconds; return True if `stop` fired meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


class VirtualUser:
    """
    One simulated client: repeatedly selects a scenario and runs its
    transactions in order over a private HTTP session.

    Parameters
    ----------
    user_id : int
        Identity used in diagnostics and to derive the selector seed.
    config : RuntimeConfig
        Shared read-only configuration.
    base_url : str
        Target root URL.
    selector : ScenarioSelector
        This user's own selector.
    sink : Any, optional
        Observability sink (defaults to ConsoleSink).
    session_factory : Callable[[], ClientSession], optional
        Builds the private session at start; a plain ClientSession by default.
    outcome_listener : OutcomeListener, optional
        Called with ``(user_id, outcome)`` for every outcome, in order.
    """

    def __init__(
        self,
        user_id: int,
        config: RuntimeConfig,
        base_url: str,
        selector: ScenarioSelector,
        *,
        sink: Optional[Any] = None,
        session_factory: Optional[Callable[[], ClientSession]] = None,
        outcome_listener: Optional[OutcomeListener] = None,
    ) -> None:
        self.user_id = user_id
        self.config = config
        self.base_url = base_url
        self.selector = selector
        self.sink = sink or ConsoleSink()
        self.session: Optional[ClientSession] = None
        self.metrics = Metrics()
        self.by_transaction: Dict[str, Metrics] = {}
        self.state = UserState.IDLE
        self.iterations = 0
        self._session_factory = session_factory or ClientSession
        self._listener = outcome_listener
        self._transaction = ""

    @property
    def name(self) -> str:
        return f"U{self.user_id}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        auth: bool = True,
        body: Optional[Any] = None,
        name: Optional[str] = None,
    ) -> TransactionOutcome:
        """Build and execute one request; reported under the running transaction's name."""
        if self.session is None:
            raise RuntimeError(f"{self.name} has no open session")
        spec = build_request(method, path, self.config, base_url=self.base_url, auth=auth, body=body)
        return await execute(spec, self.session, self.config, name=name or self._transaction, sink=self.sink)

    async def get(self, path: str, **kwargs: Any) -> TransactionOutcome:
        return await self.request("GET", path, **kwargs)

    async def run(
        self,
        stop: asyncio.Event,
        *,
        iterations: Optional[int] = None,
        start_delay: float = 0.0,
    ) -> Metrics:
        """
        Loop over scenarios until `stop` is set or `iterations` scenario runs completed.

        `stop` is only checked between transactions, so an in-flight request is
        always allowed to finish. FatalConfigurationError propagates.
        """
        try:
            if start_delay > 0 and await _wait_for_stop(stop, start_delay):
                return self.metrics
            self.session = self._session_factory()
            while not stop.is_set() and (iterations is None or self.iterations < iterations):
                scenario = self.selector.next()
                self.state = UserState.RUNNING
                for txn in scenario.transactions:
                    if stop.is_set():
                        break
                    self._record(await self._run_transaction(txn))
                else:
                    self.iterations += 1
                self.state = UserState.IDLE
            return self.metrics
        finally:
            self.state = UserState.STOPPING
            if self.session is not None:
                await self.session.close()
            self.state = UserState.TERMINATED

    async def _run_transaction(self, txn: Transaction) -> TransactionOutcome:
        self._transaction = txn.name
        t0 = time.monotonic()
        try:
            return await txn(self)
        except FatalConfigurationError:
            raise
        except Exception as e:
            self.sink.error(f"[{self.name}] Unexpected error in {txn.name}: {_describe(e)}")
            return TransactionOutcome(
                name=txn.name, ok=False, elapsed=time.monotonic() - t0,
                error=ErrorKind.TRANSACTION, detail=_describe(e),
            )

    def _record(self, outcome: TransactionOutcome) -> None:
        self.metrics.record(outcome)
        self.by_transaction.setdefault(outcome.name, Metrics()).record(outcome)
        if not outcome.ok and self.config.verbose:
            self.sink.verbose(f"[{self.name}] {outcome.name} {outcome.error.value if outcome.error else ''}: {outcome.detail}")
        if self._listener is not None:
            self._listener(self.user_id, outcome)

# ---------------------------------------------------------------------------
# Attack (scheduler)
# ---------------------------------------------------------------------------
@dataclass
class AttackSettings:
    """
    Scheduler-level settings.

    Attributes
    ----------
    base_url : str
        Root URL of the service under test.
    hatch_rate : float
        Users started per second; 0 starts every user at once.
    seed : Optional[int]
        Base seed for scenario selection (user *i* uses ``seed + i``).
    selection : str
        Key into SELECTORS ('weighted' or 'round-robin').
    grace_period : float
        Seconds users get to finish in-flight work after the stop signal.
        Stragglers are left running, but the CLI returns from ``asyncio.run``
        right after, which cancels them.
    progress_every : float
        Progress table interval in seconds; 0 disables it.
    request_timeout : float
        Total per-request timeout in seconds.
    insecure_tls : bool
        Skip TLS verification (local/self-signed targets).
    connector_limit, connector_limit_per_host : int
        Per-user connection pool bounds.
    """
    base_url: str
    hatch_rate: float = 0.0
    seed: Optional[int] = None
    selection: str = "weighted"
    grace_period: float = 30.0
    progress_every: float = 0.0
    request_timeout: float = 30.0
    insecure_tls: bool = False
    connector_limit: int = 8
    connector_limit_per_host: int = 4


def _check_scenarios(scenarios: Iterable[Scenario]) -> List[Scenario]:
    out = list(scenarios)
    if not out:
        raise ValueError("At least one scenario is required")
    seen = set()
    for s in out:
        if s.name in seen:
            raise ValueError(f"Duplicate scenario name '{s.name}'")
        seen.add(s.name)
    return out


class Attack:
    """
    Owns the virtual-user pool: ramps users up, stops them, joins them and
    merges their metrics into an AggregateReport.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        settings: AttackSettings,
        *,
        sink: Optional[Any] = None,
        outcome_listener: Optional[OutcomeListener] = None,
    ) -> None:
        if settings.selection not in SELECTORS:
            raise ValueError(f"Unknown selection policy '{settings.selection}'")
        self.config = config
        self.settings = settings
        self.sink = sink or ConsoleSink()
        self._listener = outcome_listener

    def _new_session(self) -> ClientSession:
        s = self.settings
        connector = TCPConnector(
            limit=s.connector_limit,
            limit_per_host=s.connector_limit_per_host,
            ssl=False if s.insecure_tls else True,
        )
        return ClientSession(timeout=aiohttp.ClientTimeout(total=s.request_timeout), connector=connector)

    def _new_user(self, user_id: int, scenarios: Sequence[Scenario]) -> VirtualUser:
        seed = None if self.settings.seed is None else self.settings.seed + user_id
        return VirtualUser(
            user_id,
            self.config,
            self.settings.base_url,
            SELECTORS[self.settings.selection](scenarios, seed),
            sink=self.sink,
            session_factory=self._new_session,
            outcome_listener=self._listener,
        )

    def _start_delay(self, index: int) -> float:
        if self.settings.hatch_rate <= 0:
            return 0.0
        return index / self.settings.hatch_rate

    async def run(
        self,
        scenarios: Iterable[Scenario],
        users: int,
        *,
        run_time: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> AggregateReport:
        """
        Run `users` virtual users until `run_time` elapses or each user completed
        `iterations` scenario runs, whichever comes first.

        Returns
        -------
        AggregateReport

        Raises
        ------
        FatalConfigurationError
            Re-raised after every other user has been stopped and joined.
        ValueError
            Without a stop condition, with no users, or with bad scenarios.
        """
        if run_time is None and iterations is None:
            raise ValueError("Either run_time or iterations is required")
        if users < 1:
            raise ValueError("users must be >= 1")
        pool = _check_scenarios(scenarios)

        stop = asyncio.Event()
        report = AggregateReport(users_started=users)
        vus = [self._new_user(i, pool) for i in range(users)]
        tasks = {
            asyncio.create_task(vu.run(stop, iterations=iterations, start_delay=self._start_delay(i))): vu
            for i, vu in enumerate(vus)
        }
        self.sink.info(f"Launching {users} virtual users against {self.settings.base_url}…")

        prog: Optional[asyncio.Task] = None
        if self.settings.progress_every > 0:
            prog = asyncio.create_task(self._progress(vus, report.started_at))

        fatal: Optional[FatalConfigurationError] = None
        deadline = None if run_time is None else time.monotonic() + run_time
        pending = set(tasks)
        try:
            while pending and not stop.is_set():
                timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, pending = await asyncio.wait(
                    pending, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION
                )
                fatal = self._collect(done, tasks, report)
                if fatal is not None or (deadline is not None and time.monotonic() >= deadline):
                    stop.set()

            # Broadcast stop; users finish their in-flight transaction.
            stop.set()
            if pending:
                done, pending = await asyncio.wait(pending, timeout=self.settings.grace_period)
                late_fatal = self._collect(done, tasks, report)
                fatal = fatal or late_fatal
                for task in pending:
                    # outcomes recorded so far are final; only the in-flight one is lost
                    vu = tasks[task]
                    report.merge(vu.metrics, vu.by_transaction)
                    report.users_abandoned += 1
                    self.sink.warn(
                        f"{vu.name} did not stop within {self.settings.grace_period}s; abandoning it"
                    )
        finally:
            if prog is not None:
                prog.cancel()
                try:
                    await prog
                except asyncio.CancelledError:
                    pass

        report.finish()
        if fatal is not None:
            raise fatal
        return report

    def _collect(
        self,
        done: Iterable[asyncio.Task],
        tasks: Mapping[asyncio.Task, VirtualUser],
        report: AggregateReport,
    ) -> Optional[FatalConfigurationError]:
        """Merge finished users into `report`; return the first fatal error seen."""
        fatal: Optional[FatalConfigurationError] = None
        for task in done:
            vu = tasks[task]
            exc = task.exception()
            if isinstance(exc, FatalConfigurationError):
                fatal = fatal or exc
            elif exc is not None:
                self.sink.error(f"{vu.name} stopped unexpectedly: {_describe(exc)}")
            report.merge(vu.metrics, vu.by_transaction)
        return fatal

    async def _progress(self, vus: Sequence[VirtualUser], started_at: float) -> None:
        while True:
            await asyncio.sleep(self.settings.progress_every)
            live = AggregateReport(users_started=len(vus), started_at=started_at)
            for vu in vus:
                live.merge(vu.metrics, vu.by_transaction)
            self.sink.table("PROGRESS", live.rows())

# ---------------------------------------------------------------------------
# TMS transactions
# ---------------------------------------------------------------------------
async def get_tms_client(user: VirtualUser) -> TransactionOutcome:
    """Fetch the configured client's record (tenant-authenticated)."""
    client_id = user.config.require(CLIENT_ID)
    return await user.get(CLIENT_PATH.format(client_id=client_id))


async def get_tms_version(user: VirtualUser) -> TransactionOutcome:
    """Retrieve version information; no authentication headers."""
    return await user.get(VERSION_PATH, auth=False)


def default_scenarios() -> List[Scenario]:
    return [
        Scenario("getclient", (transaction(get_tms_client),)),
        Scenario("getversion", (transaction(get_tms_version),)),
    ]


def select_scenarios(scenarios: Sequence[Scenario], names: Optional[Sequence[str]]) -> List[Scenario]:
    """Keep only the scenarios named in `names` (all when empty)."""
    if not names:
        return list(scenarios)
    known = {s.name: s for s in scenarios}
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValueError(f"Unknown scenario(s): {', '.join(unknown)} (known: {', '.join(known)})")
    return [known[n] for n in names]

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse CLI arguments. At least one of '--run-time' / '--iterations' is required;
    credentials and flags come from the environment (optionally an --env-file).
    """
    p = argparse.ArgumentParser(
        description="TMS load generator (async) with weighted scenarios, ramp-up and per-transaction stats"
    )
    p.add_argument("--host", required=True, help="Base URL of the TMS service under test")
    p.add_argument("--users", type=int, default=1, help="Number of concurrent virtual users (default: 1)")
    p.add_argument("--hatch-rate", type=float, default=0.0,
                   help="Users started per second; 0 starts all at once (default: 0)")
    p.add_argument("--run-time", type=float, default=None, help="Stop after this many seconds")
    p.add_argument("--iterations", type=int, default=None, help="Scenario runs per user before it stops")
    p.add_argument("--scenarios", nargs="+", default=None, help="Only run the named scenarios")
    p.add_argument("--selection", choices=sorted(SELECTORS), default="weighted",
                   help="Scenario selection policy (default: weighted)")
    p.add_argument("--seed", type=int, default=None, help="Seed for reproducible scenario selection")
    p.add_argument("--progress", type=float, default=0.0,
                   help="Progress print interval in seconds; 0 disables (default: 0)")
    p.add_argument("--grace-period", type=float, default=30.0,
                   help="Seconds to wait for users to finish in-flight requests (default: 30)")
    p.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout in seconds (default: 30)")
    p.add_argument("--insecure", action="store_true", help="Ignore TLS verification (local/self-signed)")
    p.add_argument("--connector-limit", type=int, default=8,
                   help="Max simultaneous connections per user session (default: 8)")
    p.add_argument("--connector-limit-per-host", type=int, default=4,
                   help="Max per-host connections per user session (default: 4)")
    p.add_argument("--env-file", default=None,
                   help="Load X_TMS_* / TMS_* variables from this .env file (existing env wins)")
    args = p.parse_args(argv)
    if args.run_time is None and args.iterations is None:
        p.error("one of --run-time or --iterations is required")
    if args.users < 1:
        p.error("--users must be >= 1")
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    sink = ConsoleSink()
    if args.env_file:
        load_dotenv(args.env_file, override=False)

    config = load_runtime_config()
    sink.info("Resolved configuration: " + ", ".join(f"{k}={v}" for k, v in config.redacted().items()))

    try:
        scenarios = select_scenarios(default_scenarios(), args.scenarios)
    except ValueError as e:
        sink.error(str(e))
        return 2

    settings = AttackSettings(
        base_url=args.host,
        hatch_rate=args.hatch_rate,
        seed=args.seed,
        selection=args.selection,
        grace_period=args.grace_period,
        progress_every=args.progress,
        request_timeout=args.timeout,
        insecure_tls=args.insecure,
        connector_limit=args.connector_limit,
        connector_limit_per_host=args.connector_limit_per_host,
    )
    attack = Attack(config, settings, sink=sink)
    try:
        report = asyncio.run(
            attack.run(scenarios, args.users, run_time=args.run_time, iterations=args.iterations)
        )
    except FatalConfigurationError as e:
        sink.fatal(str(e))
        return 2

    sink.table("RESULTS", report.rows())
    sink.table("TRANSACTIONS", report.transaction_rows(), headers=TRANSACTION_HEADERS)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
