#!/usr/bin/env python3
"""
Solana Validator Vote Exporter

Polls a Solana RPC node for vote-account state, ranks every active validator
by epoch credits and exposes the result in Prometheus format on /metrics.

The refresh loop runs in the background and writes a fully rendered
exposition into an in-memory cache; scrapes only ever read that cache.

Usage:
    # Optional: point at a different RPC node / listen address
    export SOLANA_RPC_URL="https://api.mainnet-beta.solana.com"
    export EXPORTER_HOST="127.0.0.1"
    export EXPORTER_PORT="59872"

    # Run exporter
    python exporter.py
"""

import os
import time
import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Callable

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

__version__ = "1.0.0"

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ------------------------
# CONFIGURATION
# ------------------------
class Config:
    """Exporter configuration from environment variables"""

    # RPC endpoint
    RPC_URL: str = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")

    # Transport-level timeout for the HTTP client itself
    HTTP_TIMEOUT: float = float(os.getenv("SOLANA_RPC_HTTP_TIMEOUT", "10.0"))
    MAX_CONNECTIONS: int = 4

    # Listen address for the /metrics endpoint
    HOST: str = os.getenv("EXPORTER_HOST", "127.0.0.1")
    PORT: int = int(os.getenv("EXPORTER_PORT", "59872"))

    # Refresh timing: each cycle waits at most RPC_TIMEOUT for the fetch,
    # then sleeps for its own duration plus PACING_SECONDS
    RPC_TIMEOUT: float = 4.5
    PACING_SECONDS: float = 2.0

    @classmethod
    def validate(cls):
        """Validate configuration and log the effective settings"""
        if cls.HTTP_TIMEOUT <= 0:
            raise ValueError(f"SOLANA_RPC_HTTP_TIMEOUT must be positive, got {cls.HTTP_TIMEOUT}")
        if not 0 < cls.PORT < 65536:
            raise ValueError(f"EXPORTER_PORT out of range: {cls.PORT}")

        logger.info(f"RPC URL: {cls.RPC_URL}")
        logger.info(f"Listen address: {cls.HOST}:{cls.PORT}")
        logger.info(f"RPC timeout: {cls.RPC_TIMEOUT}s, pacing: {cls.PACING_SECONDS}s")

Config.validate()

# ------------------------
# DATA MODEL
# ------------------------
@dataclass(frozen=True)
class ValidatorVoteState:
    """One entry of getVoteAccounts().current"""
    vote_pubkey: str
    root_slot: int
    last_vote: int
    # (epoch, credits, previous_credits), oldest first
    epoch_credits: Tuple[Tuple[int, int, int], ...] = ()


@dataclass
class ValidatorMetric:
    vote_pubkey: str
    root_distance: int
    vote_distance: int
    credits_earned: int
    rank: int = 0


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RPC_FAILURE = "rpc_failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one refresh cycle; failures carry no validator data"""
    kind: OutcomeKind
    validators: List[ValidatorMetric] = field(default_factory=list)
    active_count: int = 0
    duration: float = 0.0

    @classmethod
    def success(cls, validators: List[ValidatorMetric], active_count: int, duration: float) -> "RefreshOutcome":
        return cls(OutcomeKind.SUCCESS, validators, active_count, duration)

    @classmethod
    def rpc_failure(cls) -> "RefreshOutcome":
        return cls(OutcomeKind.RPC_FAILURE)

    @classmethod
    def timeout(cls) -> "RefreshOutcome":
        return cls(OutcomeKind.TIMEOUT)


VoteAccountFetcher = Callable[[], List[ValidatorVoteState]]

# ------------------------
# RPC CLIENT
# ------------------------
class RpcError(Exception):
    """Raised when the vote-account snapshot could not be fetched"""


def parse_vote_account(entry: Dict[str, Any]) -> ValidatorVoteState:
    """Convert a raw getVoteAccounts entry into a ValidatorVoteState"""
    return ValidatorVoteState(
        vote_pubkey=str(entry["votePubkey"]),
        root_slot=int(entry.get("rootSlot") or 0),
        last_vote=int(entry.get("lastVote") or 0),
        epoch_credits=tuple(
            (int(epoch), int(credits), int(prev_credits))
            for epoch, credits, prev_credits in entry.get("epochCredits") or []
        ),
    )


class SolanaRpcClient:
    """
    Blocking JSON-RPC client for the single call the exporter needs.

    Blocking on purpose: the refresh loop runs it on a worker thread and
    abandons it when the deadline passes.
    """

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=2, max_connections=Config.MAX_CONNECTIONS),
            transport=transport,
        )

    def rpc_call(self, method: str, params: Optional[List] = None) -> Any:
        """
        Make an RPC call and return its ``result``

        Raises:
            RpcError: on transport errors, HTTP error statuses, JSON-RPC
                error objects or responses without a result
        """
        try:
            response = self._client.post(
                self.url,
                json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise RpcError(f"Timeout calling {method} on {self.url}") from e
        except httpx.HTTPError as e:
            raise RpcError(f"HTTP error calling {method}: {e}") from e
        except ValueError as e:
            raise RpcError(f"Invalid JSON from {method}: {e}") from e

        if not isinstance(data, dict):
            raise RpcError(f"Unexpected response for {method}: {data!r}")
        if "error" in data:
            raise RpcError(f"RPC error for {method}: {data['error']}")
        if "result" not in data:
            raise RpcError(f"No result in response for {method}")
        return data["result"]

    def get_vote_accounts(self) -> List[ValidatorVoteState]:
        result = self.rpc_call("getVoteAccounts", [{"commitment": "finalized"}])
        try:
            return [parse_vote_account(entry) for entry in result["current"]]
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed getVoteAccounts result: {e}") from e

    def close(self):
        self._client.close()

# ------------------------
# METRICS COMPUTATION
# ------------------------
def calculate_metrics(vote_accounts: List[ValidatorVoteState]) -> Tuple[List[ValidatorMetric], int]:
    """
    Rank active validators by the credits of their latest epoch.

    A validator is active when its latest epoch-credit entry is positive;
    everything else is left out. Distances are measured against the highest
    root/vote slot in the snapshot and never go below zero. Ties keep the
    input order.

    Returns:
        (ranked metrics, active validator count)
    """
    top_root_slot = max((v.root_slot for v in vote_accounts), default=0)
    top_vote_slot = max((v.last_vote for v in vote_accounts), default=0)

    validators = []
    active_count = 0
    for account in vote_accounts:
        if not account.epoch_credits:
            continue
        _, credits_earned, _ = account.epoch_credits[-1]
        if credits_earned <= 0:
            continue

        active_count += 1
        validators.append(ValidatorMetric(
            vote_pubkey=account.vote_pubkey,
            root_distance=max(top_root_slot - account.root_slot, 0),
            vote_distance=max(top_vote_slot - account.last_vote, 0),
            credits_earned=credits_earned,
        ))

    # list.sort is stable, so equal credits keep their input order
    validators.sort(key=lambda v: v.credits_earned, reverse=True)
    for rank, validator in enumerate(validators, start=1):
        validator.rank = rank

    return validators, active_count


def fetch_and_calculate_metrics(fetch: VoteAccountFetcher) -> Tuple[List[ValidatorMetric], int]:
    return calculate_metrics(fetch())

# ------------------------
# PROMETHEUS FORMATTING
# ------------------------
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# (metric name, HELP text, 1-based rank)
TOP_VALIDATOR_GAUGES = [
    ("solana_validator_top_1", "Credits earned by the top 1 validator", 1),
    ("solana_validator_top_100", "Credits earned by the top 100 validator", 100),
    ("solana_validator_top_200", "Credits earned by the top 200 validator", 200),
]


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def export_prometheus_metrics(validators: List[ValidatorMetric], active_count: int, rpc_status: int,
                              rpc_duration: float, rpc_timeout: int) -> str:
    """
    Format ranked validators and RPC health into Prometheus text format

    Args:
        validators: Ranked metrics from calculate_metrics()
        active_count: Number of active validators
        rpc_status: 1 if the last RPC call succeeded, 0 otherwise
        rpc_duration: Seconds the last successful fetch took
        rpc_timeout: 1 if the last RPC call timed out, 0 otherwise

    Returns:
        Prometheus-formatted metrics string, one line per series
    """
    lines = []

    def add_family(name: str, help_text: str):
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} gauge")

    def add_sample(name: str, value, labels: Dict[str, Any] = None):
        if labels:
            label_str = ",".join(f'{k}="{escape_label_value(str(v))}"' for k, v in labels.items())
            lines.append(f"{name}{{{label_str}}} {value}")
        else:
            lines.append(f"{name} {value}")

    # Per-validator series, value is the rank
    add_family("solana_validator", "Metrics for each validator")
    for validator in validators:
        add_sample("solana_validator", validator.rank, {
            "identity": validator.vote_pubkey,
            "root_distance": validator.root_distance,
            "vote_distance": validator.vote_distance,
            "credits_so_far": validator.credits_earned,
        })

    for name, help_text, rank in TOP_VALIDATOR_GAUGES:
        add_family(name, help_text)
        if len(validators) >= rank:
            add_sample(name, validators[rank - 1].credits_earned)

    add_family("solana_validator_active", "Total number of active validators")
    add_sample("solana_validator_active", active_count)

    # ============================================
    # EXPORTER HEALTH
    # ============================================
    add_family("solana_validator_exporter_last_rpc_status", "RPC response status (1=success, 0=failure)")
    add_sample("solana_validator_exporter_last_rpc_status", rpc_status)

    add_family("solana_validator_exporter_rpc_response_timeout", "RPC response timeout (1=timeout, 0=no timeout)")
    add_sample("solana_validator_exporter_rpc_response_timeout", rpc_timeout)

    add_family("solana_validator_exporter_rpc_duration_seconds", "RPC response time in seconds")
    add_sample("solana_validator_exporter_rpc_duration_seconds", float(rpc_duration))

    return "\n".join(lines) + "\n"


def format_outcome(outcome: RefreshOutcome) -> str:
    """Render a refresh outcome; failures render an empty validator set"""
    if outcome.kind is OutcomeKind.SUCCESS:
        return export_prometheus_metrics(outcome.validators, outcome.active_count, 1, outcome.duration, 0)
    if outcome.kind is OutcomeKind.TIMEOUT:
        return export_prometheus_metrics([], 0, 0, 0.0, 1)
    return export_prometheus_metrics([], 0, 0, 0.0, 0)

# ------------------------
# METRICS CACHE
# ------------------------
class MetricsCache:
    """Latest rendered exposition, shared by the refresh loop and HTTP handlers"""

    def __init__(self):
        self._lock = threading.Lock()
        self._data = ""

    def write(self, text: str):
        with self._lock:
            self._data = text

    def read(self) -> str:
        with self._lock:
            return self._data

# ------------------------
# REFRESH LOOP
# ------------------------
class RefreshScheduler:
    """
    Runs fetch -> compute -> format -> cache forever.

    The fetch runs on the event loop's default executor and is raced against
    ``timeout``. A fetch that loses the race is left to finish on its thread;
    its result is discarded.
    """

    def __init__(self, fetch: VoteAccountFetcher, cache: MetricsCache,
                 timeout: float = Config.RPC_TIMEOUT, pacing: float = Config.PACING_SECONDS):
        self.fetch = fetch
        self.cache = cache
        self.timeout = timeout
        self.pacing = pacing

    async def refresh(self) -> RefreshOutcome:
        """Fetch and rank validators, bounded by the timeout"""
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, fetch_and_calculate_metrics, self.fetch)
        try:
            validators, active_count = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"getVoteAccounts did not complete within {self.timeout}s")
            return RefreshOutcome.timeout()
        except Exception as e:
            logger.error(f"Failed to fetch vote accounts: {e}")
            return RefreshOutcome.rpc_failure()

        duration = time.monotonic() - start
        logger.debug(f"Ranked {active_count} active validators in {duration:.3f}s")
        return RefreshOutcome.success(validators, active_count, duration)

    async def run_cycle(self) -> RefreshOutcome:
        outcome = await self.refresh()
        new_data = format_outcome(outcome)
        # Only the assignment happens under the cache lock
        self.cache.write(new_data)
        return outcome

    def next_delay(self, elapsed: float) -> float:
        """Slow nodes get polled less often: sleep for the cycle's own duration plus pacing"""
        return elapsed + self.pacing

    async def run_forever(self):
        while True:
            start = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Refresh cycle failed")
            await asyncio.sleep(self.next_delay(time.monotonic() - start))

# ------------------------
# APP SETUP
# ------------------------
def create_app(config=Config, fetch: Optional[VoteAccountFetcher] = None) -> FastAPI:
    """
    Build the exporter application.

    Args:
        config: Settings holder, Config by default
        fetch: Optional vote-account fetcher; defaults to a SolanaRpcClient
            against config.RPC_URL, created at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rpc_client = None
        fetch_fn = fetch
        if fetch_fn is None:
            rpc_client = SolanaRpcClient(config.RPC_URL, config.HTTP_TIMEOUT)
            fetch_fn = rpc_client.get_vote_accounts

        scheduler = RefreshScheduler(fetch_fn, app.state.cache,
                                     timeout=config.RPC_TIMEOUT, pacing=config.PACING_SECONDS)
        app.state.refresh_task = asyncio.create_task(scheduler.run_forever())
        logger.info("Exporter started successfully")
        try:
            yield
        finally:
            app.state.refresh_task.cancel()
            try:
                await app.state.refresh_task
            except asyncio.CancelledError:
                pass
            if rpc_client:
                rpc_client.close()
            logger.info("Exporter shutdown complete")

    app = FastAPI(title="Solana Validator Vote Exporter", version=__version__, lifespan=lifespan,
                  docs_url=None, redoc_url=None, openapi_url=None, redirect_slashes=False)
    app.state.cache = MetricsCache()

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException):
        # Only GET /metrics exists; unknown paths and verbs alike are 404
        if exc.status_code in (404, 405):
            return PlainTextResponse("404 Not Found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    # ------------------------
    # HTTP ENDPOINTS
    # ------------------------
    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint, served from the cache"""
        return Response(content=request.app.state.cache.read(), media_type=CONTENT_TYPE)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Serving metrics on http://{Config.HOST}:{Config.PORT}/metrics")
    uvicorn.run(app, host=Config.HOST, port=Config.PORT)
