import enum
import time
import typer
from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional

from core.config import NodeConfig
from core.errors import RpcError
from services.rpc_client import RpcClient

PROBES = ("getHealth", "getSlot", "getVersion")


class HealthStatus(enum.Enum):
    UNKNOWN = "unknown"
    RESPONDING = "responding"
    NOT_RESPONDING = "not responding"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    interval: float

    @classmethod
    def from_config(cls, config: NodeConfig) -> "RetryPolicy":
        return cls(config.health_max_attempts, config.health_interval)


class ProbeResult(NamedTuple):
    method: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


class HealthChecker:
    """
    Bounded, fixed-interval liveness polling against the validator RPC port.
    Startup time is roughly constant, so there is no backoff.
    """

    def __init__(
        self,
        rpc: RpcClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.sleep = sleep
        self.clock = clock

    def check(self, timeout: Optional[float] = None) -> HealthStatus:
        """One getHealth attempt. `timeout` caps this call below the client's default."""
        try:
            self.rpc.call("getHealth", timeout=timeout)
            return HealthStatus.RESPONDING
        except RpcError:
            return HealthStatus.NOT_RESPONDING

    def poll(self, policy: RetryPolicy) -> HealthStatus:
        """
        Runs up to policy.max_attempts checks; sleeps only between attempts.
        Never blocks past max_attempts * interval: every call and every sleep
        is cut to the time left. A zero interval leaves only the attempt bound.
        """
        typer.secho(
            f"[HEALTH] Waiting for RPC ({policy.max_attempts} attempts, every {policy.interval}s)...",
            fg=typer.colors.CYAN,
        )
        budget = policy.max_attempts * policy.interval
        deadline = self.clock() + budget if budget > 0 else None

        for attempt in range(1, policy.max_attempts + 1):
            timeout = None
            if deadline is not None:
                timeout = deadline - self.clock()
                if timeout <= 0:
                    break
            if self.check(timeout) is HealthStatus.RESPONDING:
                typer.secho(f"[HEALTH] RPC is responding (attempt {attempt}).", fg=typer.colors.GREEN)
                return HealthStatus.RESPONDING
            if attempt == policy.max_attempts:
                break
            pause = policy.interval
            if deadline is not None:
                pause = min(pause, deadline - self.clock())
                if pause <= 0:
                    break
            self.sleep(pause)
        return HealthStatus.NOT_RESPONDING

    def run_probes(self) -> List[ProbeResult]:
        """Runs every probe in order. A failing probe never stops the rest."""
        results = []
        for method in PROBES:
            try:
                results.append(ProbeResult(method, True, value=self.rpc.call(method)))
            except RpcError as e:
                results.append(ProbeResult(method, False, error=str(e)))
        return results
