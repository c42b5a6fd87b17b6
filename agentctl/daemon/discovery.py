"""Concurrent discovery across adapters.

Each adapter's discover() runs on its own worker thread. The round waits at
most ``timeout`` seconds; an adapter that raised or had not answered by then
simply did not succeed this round. Its thread is abandoned, never joined,
so a hung adapter cannot delay this round past the timeout or any later round.
"""

import logging
import time
from collections.abc import Iterable, Mapping
from concurrent.futures import (
    Future,
    ThreadPoolExecutor,
    TimeoutError as FuturesTimeoutError,
    as_completed,
)
from dataclasses import dataclass, field

from agentctl.core.adapters import AgentAdapter
from agentctl.core.models import DiscoveredSession

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryRound:
    """Outcome of one fan-out over the adapters."""

    sessions: list[DiscoveredSession] = field(default_factory=list)
    succeeded: set[str] = field(default_factory=set)
    failed: dict[str, str] = field(default_factory=dict)  # adapter -> error
    timed_out: set[str] = field(default_factory=set)
    duration_seconds: float = 0.0

    def warnings(self) -> list[str]:
        messages = [f"Adapter {name} timed out" for name in sorted(self.timed_out)]
        messages.extend(
            f"Adapter {name} failed: {error}" for name, error in sorted(self.failed.items())
        )
        return messages


def discover_all(
    adapters: Mapping[str, AgentAdapter],
    timeout: float,
    only: Iterable[str] | None = None,
) -> DiscoveryRound:
    """Run discover() on every adapter (or just ``only``) concurrently.

    Sessions come back in adapter registration order, each stamped with the
    registry name of the adapter that reported it.
    """
    wanted = None if only is None else set(only)
    names = [name for name in adapters if wanted is None or name in wanted]
    result = DiscoveryRound()
    if not names:
        return result

    started = time.monotonic()
    per_adapter: dict[str, list[DiscoveredSession]] = {}
    executor = ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="agentctl-discover")
    try:
        futures: dict[Future, str] = {
            executor.submit(adapters[name].discover): name for name in names
        }
        try:
            for future in as_completed(futures, timeout=timeout):
                name = futures[future]
                try:
                    found = future.result()
                except Exception as e:
                    logger.warning(f"Discovery failed for adapter {name}: {e}")
                    result.failed[name] = str(e) or type(e).__name__
                    continue
                per_adapter[name] = [s.model_copy(update={"adapter": name}) for s in found]
                result.succeeded.add(name)
        except FuturesTimeoutError:
            for future, name in futures.items():
                if name in result.succeeded or name in result.failed:
                    continue
                future.cancel()
                logger.warning(f"Discovery timed out for adapter {name} after {timeout}s")
                result.timed_out.add(name)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for name in names:
        result.sessions.extend(per_adapter.get(name, []))
    result.duration_seconds = time.monotonic() - started
    logger.debug(
        f"Discovery round: {len(result.sessions)} sessions from "
        f"{len(result.succeeded)}/{len(names)} adapters in {result.duration_seconds:.2f}s"
    )
    return result
