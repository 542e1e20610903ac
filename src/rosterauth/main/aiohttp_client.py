import time

import aiohttp

from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger

logger = get_logger(__name__)


class AioHttpClient:
    session: aiohttp.ClientSession = None

    def _create_trace_config(self) -> aiohttp.TraceConfig:
        """Create TraceConfig for DNS and connection timing observability."""
        trace = aiohttp.TraceConfig()

        async def on_dns_start(session, trace_config_ctx, params):
            trace_config_ctx._dns_start_time = time.perf_counter()

        async def on_dns_end(session, trace_config_ctx, params):
            if hasattr(trace_config_ctx, "_dns_start_time"):
                dns_duration_ms = (time.perf_counter() - trace_config_ctx._dns_start_time) * 1000

                # Slow DNS in front of the identity provider shows up as sign-in timeouts
                if dns_duration_ms > 2000:
                    logger.warning(
                        f"SLOW DNS resolution detected for {params.host}",
                        extra={
                            "event": "dns_slow",
                            "host": params.host,
                            "duration_ms": int(dns_duration_ms),
                            "threshold_ms": 2000,
                        },
                    )
                else:
                    logger.debug(
                        f"DNS resolution completed for {params.host}",
                        extra={
                            "event": "dns_resolution",
                            "host": params.host,
                            "duration_ms": int(dns_duration_ms),
                        },
                    )

        trace.on_dns_resolvehost_start.append(on_dns_start)
        trace.on_dns_resolvehost_end.append(on_dns_end)

        return trace

    def start(self):
        # Per-request timeouts (http_timeout_seconds) are tighter than this ceiling
        timeout = aiohttp.ClientTimeout(
            total=30.0,
            connect=10.0,
        )

        connector = aiohttp.TCPConnector(
            limit=100,
            limit_per_host=30,
            enable_cleanup_closed=True,
            use_dns_cache=True,
            ttl_dns_cache=300,
        )

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            trace_configs=[self._create_trace_config()],
        )

    async def stop(self):
        await self.session.close()
        self.session = None

    def __call__(self) -> aiohttp.ClientSession:
        assert self.session is not None
        return self.session


def request_timeout(seconds: float | None = None) -> aiohttp.ClientTimeout:
    """Caller-supplied bound for a single provider round-trip."""
    return aiohttp.ClientTimeout(total=seconds or get_settings().http_timeout_seconds)


aiohttp_client = AioHttpClient()
