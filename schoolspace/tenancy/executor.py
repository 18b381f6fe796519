"""
Namespace-Qualified Query Executor

Runs statements against one school namespace on the shared pool.

Statement templates mark where the namespace goes with the literal
placeholder `{schema}`:

    executor.all("SELECT * FROM {schema}.students WHERE class_id = :class_id",
                 {"class_id": 4}, namespace=context.namespace)

Only a namespace that passes the validator (again, here) is ever spliced
into statement text. Every other value is a bound parameter.

Nothing is set on the connection itself (no search_path), so a pooled
connection carries no tenant state back into the pool.

Connection and pool failures are retried a bounded number of times with
exponential backoff (tenacity). Anything else propagates on the first
failure.
"""
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, TimeoutError as PoolTimeoutError
from tenacity import RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from schoolspace.config import get_settings
from schoolspace.core.exceptions import TenantNamespaceMissingError, TransientStoreError
from schoolspace.tenancy import catalog
from schoolspace.tenancy.validator import require_valid_namespace
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)

settings = get_settings()

NAMESPACE_PLACEHOLDER = "{schema}"


@dataclass
class RunResult:
    """Outcome of a write statement."""

    rowcount: int
    rows: List[Dict[str, Any]] = field(default_factory=list)


def is_transient(exc: BaseException) -> bool:
    """Pool exhaustion and dropped connections are worth another attempt."""
    if isinstance(exc, (PoolTimeoutError, DisconnectionError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return False


def qualify(statement: str, namespace: Optional[str]) -> str:
    """
    Substitute the namespace into a statement template.

    A template without the placeholder must not be given a namespace and
    vice versa; either mismatch means the caller is about to run the
    statement somewhere other than where they think.
    """
    has_placeholder = NAMESPACE_PLACEHOLDER in statement
    if namespace is None:
        if has_placeholder:
            raise ValueError("Statement is namespace-qualified but no namespace was given")
        return statement
    if not has_placeholder:
        raise ValueError("Namespace given for a statement with no {schema} placeholder")
    namespace = require_valid_namespace(namespace, source="executor")
    return statement.replace(NAMESPACE_PLACEHOLDER, namespace)


def _rows(result) -> List[Dict[str, Any]]:
    if not result.returns_rows:
        return []
    return [dict(row._mapping) for row in result]


class NamespaceStatements:
    """get/all/run bound to one open connection and one namespace."""

    def __init__(self, conn: Connection, namespace: Optional[str]):
        self.conn = conn
        self.namespace = namespace

    def execute(self, statement: str, params: Optional[Mapping[str, Any]] = None):
        return self.conn.execute(text(qualify(statement, self.namespace)), dict(params or {}))

    def get(self, statement: str, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        rows = _rows(self.execute(statement, params))
        return rows[0] if rows else None

    def all(self, statement: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        return _rows(self.execute(statement, params))

    def run(self, statement: str, params: Optional[Mapping[str, Any]] = None) -> RunResult:
        result = self.execute(statement, params)
        rows = _rows(result)
        return RunResult(rowcount=max(result.rowcount or 0, 0), rows=rows)


class NamespaceQueryExecutor:
    """
    Executes statement templates against school namespaces.

    Before the first statement against a namespace its physical existence
    is checked; a missing namespace fails closed with
    TenantNamespaceMissingError. Positive checks are remembered for
    `known_ttl` seconds (the resolver cache TTL by default), so a namespace
    dropped later fails closed again once its entry lapses.
    """

    def __init__(self, engine: Engine, max_attempts: Optional[int] = None,
                 wait_min: float = 0.05, wait_max: float = 1.0,
                 known_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.engine = engine
        self.max_attempts = max(1, max_attempts or settings.QUERY_RETRY_ATTEMPTS)
        self.wait_min = wait_min
        self.wait_max = wait_max
        self.known_ttl = settings.TENANT_CACHE_TTL_SECONDS if known_ttl is None else known_ttl
        self._clock = clock
        self._known: Dict[str, float] = {}

    # ------------------------------------------------------------------

    def execute(self, namespace: Optional[str], statement: str,
                params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run one statement in its own transaction and return any rows."""
        return self._retrying(namespace, lambda stmts: stmts.all(statement, params))

    def get(self, statement: str, params: Optional[Mapping[str, Any]] = None,
            namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self._retrying(namespace, lambda stmts: stmts.get(statement, params))

    def all(self, statement: str, params: Optional[Mapping[str, Any]] = None,
            namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._retrying(namespace, lambda stmts: stmts.all(statement, params))

    def run(self, statement: str, params: Optional[Mapping[str, Any]] = None,
            namespace: Optional[str] = None) -> RunResult:
        return self._retrying(namespace, lambda stmts: stmts.run(statement, params))

    @contextmanager
    def transaction(self, namespace: Optional[str]) -> Iterator[NamespaceStatements]:
        """
        Several statements on one connection, committed together.

        Not retried: a dropped connection mid-transaction surfaces as
        TransientStoreError and the whole block is rolled back.
        """
        if namespace is not None:
            namespace = require_valid_namespace(namespace, source="executor")
        try:
            with self.engine.begin() as conn:
                self._ensure_exists(conn, namespace)
                yield NamespaceStatements(conn, namespace)
        except (PoolTimeoutError, DisconnectionError, DBAPIError) as e:
            if not is_transient(e):
                raise
            logger.error(f"Transaction lost its connection: {e}", extra={"namespace": namespace})
            raise TransientStoreError(attempts=1) from e

    # ------------------------------------------------------------------

    def _ensure_exists(self, conn: Connection, namespace: Optional[str]) -> None:
        if namespace is None:
            return
        now = self._clock()
        if self._known.get(namespace, 0) > now:
            return
        if not catalog.namespace_exists(conn, namespace):
            self._known.pop(namespace, None)
            raise TenantNamespaceMissingError(namespace=namespace)
        if self.known_ttl > 0:
            self._known[namespace] = now + self.known_ttl

    def _once(self, namespace: Optional[str], work):
        with self.engine.begin() as conn:
            self._ensure_exists(conn, namespace)
            return work(NamespaceStatements(conn, namespace))

    def _retrying(self, namespace: Optional[str], work):
        if namespace is not None:
            # Validate before the first attempt so a bad identifier never touches the pool
            namespace = require_valid_namespace(namespace, source="executor")
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(min=self.wait_min, max=self.wait_max),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry,
        )
        try:
            return retryer(self._once, namespace, work)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(
                f"Giving up after {self.max_attempts} attempts: {cause}",
                extra={"namespace": namespace},
            )
            raise TransientStoreError(attempts=self.max_attempts) from cause

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            f"Transient database error, retrying (attempt {retry_state.attempt_number}): "
            f"{retry_state.outcome.exception()}"
        )
