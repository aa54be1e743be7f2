# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from bot import config
from infra.fanout import AllAttemptsFailed, first_success
from infra.metrics import METRICS


logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Base for everything the JSON-RPC layer raises."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class RPCTransportError(RPCError):
    """Timeout, HTTP or connection failure: the endpoint did not answer."""


class RPCResponseError(RPCError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, *, url: Optional[str] = None, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message, url=url)
        self.code = code
        self.data = data


class ProviderUnavailableError(RPCError):
    """No endpoint in the set answered."""

    def __init__(self, message: str, *, errors: Optional[Sequence[BaseException]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def _normalize_rpc_error(err: Any) -> str:
    if isinstance(err, RPCResponseError):
        return "revert" if "revert" in str(err).lower() else "rpc_error"
    text = str(err or "").lower()
    if "timeout" in text or isinstance(err, asyncio.TimeoutError):
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "decode" in text:
        return "decode_error"
    if "revert" in text:
        return "revert"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    return "transport_error"


def _percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    if len(v) == 1:
        return float(v[0])
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


def _extract_revert_hex(ed: Any) -> Optional[str]:
    if isinstance(ed, dict):
        if isinstance(ed.get("data"), str):
            return ed["data"]
        if isinstance(ed.get("result"), str):
            return ed["result"]
        for _k, v in ed.items():
            if isinstance(v, dict):
                if isinstance(v.get("return"), str):
                    return v["return"]
                if isinstance(v.get("data"), str):
                    return v["data"]
    if isinstance(ed, str):
        return ed
    return None


class EndpointHealth:
    def __init__(self, maxlen: int = 50) -> None:
        self._samples: deque[Tuple[float, bool, str]] = deque(maxlen=max(1, int(maxlen)))

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, ok: bool, latency_ms: float, reason: str) -> None:
        self._samples.append((float(latency_ms), bool(ok), str(reason)))

    def stats(self) -> Dict[str, Any]:
        if not self._samples:
            return {
                "count": 0,
                "success_rate": None,
                "timeout_rate": None,
                "p50_latency_ms": None,
                "p95_latency_ms": None,
            }
        total = len(self._samples)
        oks = sum(1 for _, ok, _ in self._samples if ok)
        timeouts = sum(1 for _, _, reason in self._samples if reason == "timeout")
        lats = [float(lat) for lat, _, _ in self._samples]
        return {
            "count": total,
            "success_rate": float(oks) / float(total),
            "timeout_rate": float(timeouts) / float(total),
            "p50_latency_ms": _percentile(lats, 50.0),
            "p95_latency_ms": _percentile(lats, 95.0),
        }


class AsyncRPC:
    """Async JSON-RPC client for a single endpoint.

    - persistent aiohttp session
    - per-call timeouts clamped to config bounds
    - retries with exponential backoff for transport errors and rate limits;
      a JSON-RPC error object is a definitive answer and is never retried
    - Quoter v1 revert-data pass-through for eth_call (opt-in)
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
    ):
        self.url = _normalize_url(url)
        if default_timeout_s is None:
            default_timeout_s = float(getattr(config, "RPC_DEFAULT_TIMEOUT_S", 3.0))
        if max_retries is None:
            max_retries = int(getattr(config, "RPC_RETRY_COUNT", 1))
        if backoff_base_s is None:
            backoff_base_s = float(getattr(config, "RPC_BACKOFF_BASE_S", 0.35))
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = int(max_retries)
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        min_t = float(getattr(config, "RPC_TIMEOUT_MIN_S", 0.5))
        max_t = float(getattr(config, "RPC_TIMEOUT_MAX_S", 10.0))
        if max_t < min_t:
            max_t = min_t
        return max(min_t, min(max_t, to_s))

    async def _post(self, payload: Any, to_s: float) -> Any:
        session = await self._get_session()

        async def _do():
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise aiohttp.ClientResponseError(
                        request_info=resp.request_info,
                        history=resp.history,
                        status=resp.status,
                        message=text,
                        headers=resp.headers,
                    )
                return await resp.json(content_type=None)

        return await asyncio.wait_for(_do(), timeout=to_s)

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
        retries: Optional[int] = None,
    ) -> Any:
        """Perform a JSON-RPC call.

        Some contracts (Uniswap V3 Quoter v1) revert on purpose to return data
        from eth_call. That pass-through is opt-in via allow_revert_data=True;
        Error(string)/Panic(uint256) payloads are never passed through.
        """
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        to_s = self._clamp_timeout(timeout_s)
        max_retries = self.max_retries if retries is None else int(retries)
        host = _url_host(self.url)
        last_err: Optional[str] = None

        for attempt in range(max_retries + 1):
            t0 = time.perf_counter()
            METRICS.inc("rpc_requests_total", 1)
            METRICS.inc_reason("rpc_requests_by_endpoint", host, 1)
            try:
                data = await self._post(payload, to_s)
            except asyncio.TimeoutError:
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                last_err = f"http_{e.status}"
                if e.status not in (429, 500, 502, 503, 504):
                    break
            except (aiohttp.ClientError, ValueError, OSError) as e:
                last_err = f"{type(e).__name__}: {e}"
            else:
                dt_ms = (time.perf_counter() - t0) * 1000.0
                METRICS.observe("rpc_latency_ms", dt_ms)
                METRICS.observe(f"rpc_latency_ms:{host}", dt_ms)
                if not isinstance(data, dict):
                    last_err = "decode_error: response is not an object"
                elif "error" in data:
                    err = data["error"]
                    err_data = err.get("data") if isinstance(err, dict) else None
                    revert_hex = _extract_revert_hex(err_data)
                    if revert_hex and allow_revert_data and method == "eth_call":
                        hx = revert_hex if revert_hex.startswith("0x") else ("0x" + revert_hex)
                        if not (hx.startswith("0x08c379a0") or hx.startswith("0x4e487b71")):
                            return hx
                    message = err.get("message") if isinstance(err, dict) else str(err)
                    code = err.get("code") if isinstance(err, dict) else None
                    METRICS.inc_reason("rpc_fail_by_reason", "rpc_error", 1)
                    raise RPCResponseError(f"rpc_error:{message}", url=self.url, code=code, data=err_data)
                else:
                    return data.get("result")

            if attempt < max_retries:
                sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                if last_err and ("http_429" in last_err or "rate limit" in last_err.lower()):
                    sleep_s += float(getattr(config, "RPC_RATE_LIMIT_BACKOFF_S", 0.35))
                await asyncio.sleep(sleep_s)

        METRICS.inc_reason("rpc_fail_by_reason", _normalize_rpc_error(last_err), 1)
        raise RPCTransportError(f"RPC call failed after retries: {last_err}", url=self.url)

    async def call_batch(
        self,
        method: str,
        params_list: List[list],
        *,
        timeout_s: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """One HTTP round trip; per-entry {"result": ...} or {"error": ...}."""
        if not params_list:
            return []
        to_s = self._clamp_timeout(timeout_s)
        self._id += len(params_list)
        start_id = self._id - len(params_list) + 1
        payload = [
            {"jsonrpc": "2.0", "id": start_id + i, "method": method, "params": params_list[i]}
            for i in range(len(params_list))
        ]
        METRICS.inc("rpc_requests_total", len(params_list))
        try:
            data = await self._post(payload, to_s)
        except asyncio.TimeoutError as e:
            raise RPCTransportError(f"timeout({to_s}s)", url=self.url) from e
        except aiohttp.ClientResponseError as e:
            raise RPCTransportError(f"http_{e.status}", url=self.url) from e
        except (aiohttp.ClientError, ValueError, OSError) as e:
            raise RPCTransportError(f"{type(e).__name__}: {e}", url=self.url) from e
        if not isinstance(data, list):
            raise RPCTransportError("decode_error: batch response is not a list", url=self.url)

        by_id: Dict[int, Any] = {}
        for entry in data:
            if isinstance(entry, dict) and isinstance(entry.get("id"), int):
                by_id[int(entry["id"])] = entry
        out: List[Dict[str, Any]] = []
        for i in range(len(params_list)):
            entry = by_id.get(start_id + i)
            if not isinstance(entry, dict):
                out.append({"error": "missing"})
            elif "error" in entry:
                out.append({"error": entry.get("error")})
            else:
                out.append({"result": entry.get("result")})
        return out


ClientFactory = Callable[[str], Any]


class RPCPool:
    """Endpoint set for one execution strategy.

    mode="failover": each read goes to the healthiest endpoint; on transport
    failure it moves to the next one.
    mode="race": the same read is sent to the top `race_width` healthy
    endpoints at once; the first successful answer wins and the rest are
    cancelled.

    Endpoints that keep failing trip a circuit breaker, and endpoints whose
    health window degrades are banned for a cooldown. A JSON-RPC error from a
    reachable node is re-raised as-is (and does not hurt the endpoint's
    health); only transport failures on every endpoint produce
    ProviderUnavailableError.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        mode: str = "failover",
        race_width: int = 3,
        default_timeout_s: Optional[float] = None,
        cb_threshold: Optional[int] = None,
        cb_cooldown_s: Optional[float] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        cleaned: List[str] = []
        for u in urls or []:
            nu = _normalize_url(u)
            if nu and nu not in cleaned:
                cleaned.append(nu)
        if not cleaned:
            raise ValueError("RPCPool requires at least one url")
        if mode not in ("failover", "race"):
            raise ValueError(f"unknown RPCPool mode: {mode}")

        if default_timeout_s is None:
            default_timeout_s = float(getattr(config, "RPC_DEFAULT_TIMEOUT_S", 3.0))
        if client_factory is None:
            def client_factory(u: str) -> AsyncRPC:
                return AsyncRPC(u, default_timeout_s=default_timeout_s)

        self.urls: List[str] = cleaned
        self.mode = mode
        self.race_width = max(1, int(race_width))
        self._clients = [client_factory(u) for u in self.urls]
        self._clock = clock
        self.last_url: Optional[str] = None

        self._cb_threshold = int(cb_threshold if cb_threshold is not None else getattr(config, "RPC_CB_THRESHOLD", 5))
        self._cb_cooldown_s = float(cb_cooldown_s if cb_cooldown_s is not None else getattr(config, "RPC_CB_COOLDOWN_S", 30.0))
        self._cb_fail: List[int] = [0 for _ in self._clients]
        self._cb_open_until: List[float] = [0.0 for _ in self._clients]

        self._ok: List[int] = [0 for _ in self._clients]
        self._fail: List[int] = [0 for _ in self._clients]
        self._lat_ewma_ms: List[float] = [350.0 for _ in self._clients]

        self._health: List[EndpointHealth] = [
            EndpointHealth(int(getattr(config, "RPC_HEALTH_WINDOW", 50))) for _ in self._clients
        ]
        self._ban_until: List[float] = [0.0 for _ in self._clients]
        self._ban_total = 0
        self._fallbacks_total = 0
        self._host_to_idx: Dict[str, int] = {_url_host(url): i for i, url in enumerate(self.urls)}

    async def close(self) -> None:
        for c in self._clients:
            closer = getattr(c, "close", None)
            if closer is not None:
                await closer()

    def _resolve_idx(self, url: Optional[str]) -> Optional[int]:
        if not url:
            return None
        return self._host_to_idx.get(_url_host(url))

    def _health_score(self, idx: int) -> float:
        stats = self._health[idx].stats()
        success_rate = stats.get("success_rate")
        timeout_rate = stats.get("timeout_rate")
        p95 = stats.get("p95_latency_ms")
        base = float(success_rate) if success_rate is not None else 1.0
        penalty_latency = 0.0
        if p95 is not None:
            penalty_latency = min(float(p95) / 2000.0, 1.0) * 0.3
        penalty_timeouts = 0.0
        if timeout_rate is not None:
            penalty_timeouts = float(timeout_rate) * 0.7
        return float(base - penalty_latency - penalty_timeouts)

    def _should_ban(self, idx: int) -> bool:
        if len(self._health[idx]) < int(getattr(config, "RPC_BAN_MIN_SAMPLES", 3)):
            return False
        stats = self._health[idx].stats()
        timeout_rate = stats.get("timeout_rate")
        success_rate = stats.get("success_rate")
        p95 = stats.get("p95_latency_ms")
        if timeout_rate is not None and float(timeout_rate) > float(getattr(config, "RPC_BAN_TIMEOUT_RATE", 0.2)):
            return True
        if success_rate is not None and float(success_rate) < float(getattr(config, "RPC_BAN_SUCCESS_RATE", 0.7)):
            return True
        if p95 is not None and float(p95) > float(getattr(config, "RPC_BAN_LATENCY_P95_MS", 2500.0)):
            return True
        return False

    def _is_banned(self, idx: int, now_s: Optional[float] = None) -> bool:
        now = float(now_s if now_s is not None else self._clock())
        return now < float(self._ban_until[idx])

    def _is_cb_open(self, idx: int, now_s: Optional[float] = None) -> bool:
        now = float(now_s if now_s is not None else self._clock())
        return now < float(self._cb_open_until[idx])

    def _apply_ban_if_needed(self, idx: int) -> None:
        if not self._should_ban(idx):
            return
        now = self._clock()
        until = now + max(0.0, float(getattr(config, "RPC_BAN_SECONDS", 60)))
        if until > float(self._ban_until[idx]):
            if not self._is_banned(idx, now):
                logger.warning("rpc endpoint banned host=%s until=%.0f", _url_host(self.urls[idx]), until)
                self._ban_total += 1
                METRICS.inc("rpc_bans_total", 1)
            self._ban_until[idx] = until

    def _record_health(self, idx: int, ok: bool, latency_ms: float, reason: str) -> None:
        self._health[idx].record(ok, latency_ms, reason)
        self._apply_ban_if_needed(idx)

    def _record_result(self, idx: int, ok: bool) -> None:
        if ok:
            self._ok[idx] += 1
            self._cb_fail[idx] = 0
            self._cb_open_until[idx] = 0.0
            return
        self._fail[idx] += 1
        self._cb_fail[idx] += 1
        if self._cb_threshold > 0 and self._cb_fail[idx] >= self._cb_threshold:
            self._cb_open_until[idx] = self._clock() + float(self._cb_cooldown_s)
            self._cb_fail[idx] = 0
            logger.warning("rpc circuit open host=%s cooldown=%.1fs", _url_host(self.urls[idx]), self._cb_cooldown_s)

    def record_health_for_test(self, url: str, *, ok: bool, latency_ms: float, reason: str) -> None:
        idx = self._resolve_idx(url)
        if idx is None:
            return
        self._record_health(idx, ok=bool(ok), latency_ms=float(latency_ms), reason=str(reason))

    def is_banned(self, url: str, *, now_s: Optional[float] = None) -> bool:
        idx = self._resolve_idx(url)
        if idx is None:
            return False
        return self._is_banned(idx, now_s=now_s)

    def is_available(self, url: str) -> bool:
        idx = self._resolve_idx(url)
        if idx is None:
            return False
        now = self._clock()
        return not self._is_banned(idx, now) and not self._is_cb_open(idx, now)

    def _candidates(self) -> List[int]:
        """Healthy endpoints, best first. Order is stable for equal scores."""
        now = self._clock()
        healthy = [i for i in range(len(self._clients)) if not self._is_banned(i, now) and not self._is_cb_open(i, now)]
        return sorted(healthy, key=lambda i: (-self._health_score(i), self._lat_ewma_ms[i], i))

    def best_url(self) -> Optional[str]:
        cands = self._candidates()
        return self.urls[cands[0]] if cands else None

    def health_snapshot(self) -> Dict[str, Any]:
        endpoints: List[Dict[str, Any]] = []
        now = self._clock()
        for i, url in enumerate(self.urls):
            stats = self._health[i].stats()
            endpoints.append({
                "url": url,
                "host": _url_host(url),
                "success_rate": stats.get("success_rate"),
                "timeout_rate": stats.get("timeout_rate"),
                "p50_latency_ms": stats.get("p50_latency_ms"),
                "p95_latency_ms": stats.get("p95_latency_ms"),
                "banned_until": float(self._ban_until[i]) if self._ban_until[i] > now else None,
                "cb_open": self._is_cb_open(i, now),
            })
        return {
            "mode": self.mode,
            "endpoints": endpoints,
            "bans_total": int(self._ban_total),
            "fallbacks_total": int(self._fallbacks_total),
        }

    def stats(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for i, url in enumerate(self.urls):
            out.append({
                "url": url,
                "ok": self._ok[i],
                "fail": self._fail[i],
                "lat_ms": round(float(self._lat_ewma_ms[i]), 1),
                "cb_open": self._is_cb_open(i),
                "banned_until": float(self._ban_until[i]) if self._ban_until[i] else None,
            })
        return out

    async def _call_idx(self, idx: int, method: str, params: list, **kwargs: Any) -> Any:
        client = self._clients[idx]
        t0 = time.perf_counter()
        try:
            res = await client.call(method, params, **kwargs)
        except RPCResponseError:
            # Node is reachable; the answer itself is an error.
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self._record_result(idx, ok=True)
            self._record_health(idx, ok=True, latency_ms=dt_ms, reason="rpc_error")
            raise
        except Exception as e:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self._record_result(idx, ok=False)
            self._record_health(idx, ok=False, latency_ms=dt_ms, reason=_normalize_rpc_error(e))
            raise
        dt_ms = (time.perf_counter() - t0) * 1000.0
        self._lat_ewma_ms[idx] = 0.8 * self._lat_ewma_ms[idx] + 0.2 * dt_ms
        self._record_result(idx, ok=True)
        self._record_health(idx, ok=True, latency_ms=dt_ms, reason="ok")
        self.last_url = self.urls[idx]
        return res

    def _unavailable(self, errors: Sequence[BaseException]) -> BaseException:
        for e in reversed(list(errors)):
            if isinstance(e, RPCResponseError):
                return e
        METRICS.inc("rpc_provider_unavailable_total", 1)
        last = errors[-1] if errors else None
        return ProviderUnavailableError(
            f"all {len(self.urls)} endpoints unavailable; last: {last}", errors=errors
        )

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
    ) -> Any:
        kwargs: Dict[str, Any] = {"timeout_s": timeout_s}
        if allow_revert_data:
            kwargs["allow_revert_data"] = True
        cands = self._candidates()
        if not cands:
            raise ProviderUnavailableError(f"all {len(self.urls)} endpoints banned or circuit-open")

        if self.mode == "race" and len(cands) > 1:
            picked = cands[: self.race_width]
            METRICS.inc("rpc_race_calls_total", 1)
            try:
                return await first_success([
                    (lambda i=i: self._call_idx(i, method, params, **kwargs)) for i in picked
                ])
            except AllAttemptsFailed as e:
                raise self._unavailable(e.errors) from e

        errors: List[BaseException] = []
        for n, idx in enumerate(cands):
            if n > 0:
                self._fallbacks_total += 1
                METRICS.inc("rpc_fallbacks_total", 1)
                logger.warning("rpc failover method=%s to host=%s after: %s", method, _url_host(self.urls[idx]), errors[-1])
            try:
                return await self._call_idx(idx, method, params, **kwargs)
            except RPCResponseError:
                raise
            except RPCError as e:
                errors.append(e)
                if "http_429" in str(e) or "rate limit" in str(e).lower():
                    await asyncio.sleep(float(getattr(config, "RPC_RATE_LIMIT_BACKOFF_S", 0.35)) + random.random() * 0.25)
        raise self._unavailable(errors)

    async def call_batch(
        self,
        method: str,
        params_list: List[list],
        *,
        timeout_s: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        if not params_list:
            return []
        errors: List[BaseException] = []
        cands = self._candidates()
        if not cands:
            raise ProviderUnavailableError(f"all {len(self.urls)} endpoints banned or circuit-open")
        for idx in cands:
            client = self._clients[idx]
            batch = getattr(client, "call_batch", None)
            if batch is None:
                break
            t0 = time.perf_counter()
            try:
                res = await batch(method, params_list, timeout_s=timeout_s)
            except RPCError as e:
                self._record_result(idx, ok=False)
                self._record_health(idx, ok=False, latency_ms=(time.perf_counter() - t0) * 1000.0, reason=_normalize_rpc_error(e))
                errors.append(e)
                continue
            self._record_result(idx, ok=True)
            self._record_health(idx, ok=True, latency_ms=(time.perf_counter() - t0) * 1000.0, reason="ok")
            return res

        if errors and len(errors) >= len(cands):
            raise self._unavailable(errors)
        # Batching unsupported by the client: fall back to individual calls.
        out: List[Dict[str, Any]] = []
        for params in params_list:
            try:
                out.append({"result": await self.call(method, params, timeout_s=timeout_s)})
            except RPCResponseError as e:
                out.append({"error": str(e)})
        return out

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        *,
        timeout_s: Optional[float] = None,
        allow_revert_data: bool = False,
    ) -> str:
        return await self.call(
            "eth_call",
            [{"to": to, "data": data}, block],
            timeout_s=timeout_s,
            allow_revert_data=allow_revert_data,
        )

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_blockNumber", [], timeout_s=timeout_s)
        return int(res, 16)

    async def send_raw_transaction(self, raw_hex: str, *, url: Optional[str] = None, timeout_s: Optional[float] = None) -> str:
        """Broadcast to exactly one endpoint, once."""
        idx = self._resolve_idx(url) if url else None
        if idx is None:
            cands = self._candidates()
            if not cands:
                raise ProviderUnavailableError("no endpoint available for submission")
            idx = cands[0]
        METRICS.inc("rpc_send_raw_total", 1)
        return await self._call_idx(idx, "eth_sendRawTransaction", [raw_hex], timeout_s=timeout_s, retries=0)

    async def probe(self, *, timeout_s: Optional[float] = None) -> Dict[str, bool]:
        """eth_blockNumber on every endpoint concurrently; results feed health."""

        async def _one(idx: int) -> bool:
            try:
                await self._call_idx(idx, "eth_blockNumber", [], timeout_s=timeout_s)
                return True
            except RPCError:
                return False

        results = await asyncio.gather(*[_one(i) for i in range(len(self._clients))])
        return {url: ok for url, ok in zip(self.urls, results)}


class RpcRegistry:
    """One pool per (mode, width, endpoint set) so health and bans outlive a trade."""

    def __init__(self, *, client_factory: Optional[ClientFactory] = None) -> None:
        self._pools: Dict[Tuple[str, int, Tuple[str, ...]], RPCPool] = {}
        self._client_factory = client_factory

    def pool(self, urls: Sequence[str], *, mode: str = "failover", race_width: int = 1) -> RPCPool:
        key = (mode, int(race_width), tuple(_normalize_url(u) for u in urls))
        pool = self._pools.get(key)
        if pool is None:
            pool = RPCPool(urls, mode=mode, race_width=race_width, client_factory=self._client_factory)
            self._pools[key] = pool
        return pool

    async def close(self) -> None:
        for pool in self._pools.values():
            await pool.close()
        self._pools.clear()

