"""On-device embedding model loader with mirror fallback.

For each candidate host, in order:

1. Health check — fetch the model's small JSON metadata files and reject
   anything that is not JSON (mirrors often answer 200 with an HTML page).
2. Download the model snapshot from that host in a child process, which is
   killed if it outlives the timeout, then instantiate the
   sentence-transformers model from the local snapshot.
3. If instantiation fails because the local cache holds an HTML payload
   where JSON was expected, clear the model cache and retry once on the
   same host.

The first host that succeeds wins. When every host fails the caller gets a
single ModelLoadError naming all hosts and the last underlying error.

``ModelLoader.get_pipeline()`` is memoized: concurrent callers share one
in-flight attempt, and a failed attempt is forgotten so a later call
starts over.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bookrag.config import ModelCfg

logger = logging.getLogger(__name__)

_USER_AGENT = "bookrag/0.1"
_DETAIL_LIMIT = 500
_MAX_HEALTHCHECK_BYTES = 1024 * 1024
_READ_BLOCK_BYTES = 64 * 1024

class ModelLoadError(RuntimeError):
    """No host could provide a working embedding model.

    Attributes:
        hosts: Every host that was tried, in order.
        last_error: The failure from the last host.
    """

    def __init__(self, message: str, *, hosts: list[str], last_error: BaseException | None) -> None:
        super().__init__(message)
        self.hosts = hosts
        self.last_error = last_error


class HostCheckError(RuntimeError):
    """A host answered the health check with something other than JSON."""


# ---------------------------------------------------------------------------
# Debug event log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelEvent:
    time: float
    type: str
    host: str | None = None
    url: str | None = None
    detail: str | None = None


@dataclass
class ModelDebugSnapshot:
    model_loaded: bool
    hosts: list[str]
    events: list[ModelEvent]


def format_detail(value: Any) -> str:
    """One-line, length-capped rendering of an error or message."""
    if isinstance(value, BaseException):
        raw = f"{type(value).__name__}: {value}"
    else:
        raw = "" if value is None else str(value)
    return re.sub(r"\s+", " ", raw).strip()[:_DETAIL_LIMIT]


class ModelEventLog:
    """Bounded in-memory log of model-loading events with subscribers."""

    def __init__(self, limit: int = 100) -> None:
        self._events: deque[ModelEvent] = deque(maxlen=max(1, limit))
        self._listeners: list[Callable[[ModelEvent], None]] = []

    def emit(
        self,
        type: str,
        *,
        host: str | None = None,
        url: str | None = None,
        detail: str | None = None,
    ) -> ModelEvent:
        event = ModelEvent(
            time=time.time(),
            type=type,
            host=host,
            url=url,
            detail=detail[:_DETAIL_LIMIT] if detail is not None else None,
        )
        self._events.append(event)
        logger.debug("model event %s host=%s detail=%s", type, host, event.detail)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # Subscribers must not break model loading.
                logger.debug("model event listener raised", exc_info=True)
        return event

    def subscribe(self, listener: Callable[[ModelEvent], None]) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def events(self) -> list[ModelEvent]:
        return list(self._events)


# ---------------------------------------------------------------------------
# Host + payload helpers
# ---------------------------------------------------------------------------


def normalize_host(host: str) -> str:
    host = host.strip()
    return host if host.endswith("/") else f"{host}/"


def resolve_hosts(cfg: ModelCfg) -> list[str]:
    """Canonical host first, then mirrors; normalised and de-duplicated."""
    hosts: list[str] = []
    for host in [cfg.canonical_host, *cfg.mirrors]:
        if not host or not host.strip():
            continue
        normalized = normalize_host(host)
        if normalized not in hosts:
            hosts.append(normalized)
    return hosts


def is_html_payload(content_type: str, body: str) -> bool:
    prefix = body.lstrip()[:32].lower()
    return (
        "text/html" in content_type.lower()
        or prefix.startswith("<!doctype html")
        or prefix.startswith("<html")
    )


def looks_like_corrupt_cache(exc: BaseException) -> bool:
    """True if *exc* (or its cause chain) shows HTML cached in place of JSON."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, json.JSONDecodeError) and current.doc.lstrip().startswith("<"):
            return True
        message = str(current).lower()
        if "<!doctype" in message or "unexpected token '<'" in message:
            return True
        current = current.__cause__ or current.__context__
    return False


def _fetch_text(url: str, timeout: float) -> tuple[int, str, str]:
    """GET *url*; return (status, content type, body). HTTP errors are returned, not raised.

    *timeout* bounds both each socket operation and the whole body read, so
    the call never outlives it by more than one socket operation.

    Raises:
        TimeoutError: The host did not answer, or the body did not arrive, in time.
        OSError: The host could not be reached.
    """
    deadline = time.monotonic() + timeout
    req = urllib.request.Request(
        url,
        headers={"User-Agent": _USER_AGENT, "Cache-Control": "no-cache", "Pragma": "no-cache"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            blocks: list[bytes] = []
            size = 0
            while size < _MAX_HEALTHCHECK_BYTES:
                if time.monotonic() > deadline:
                    raise TimeoutError(f"Fetch timeout ({timeout:g}s): {url}")
                block = resp.read(min(_READ_BLOCK_BYTES, _MAX_HEALTHCHECK_BYTES - size))
                if not block:
                    break
                blocks.append(block)
                size += len(block)
            body = b"".join(blocks).decode("utf-8", errors="replace")
            return resp.status, resp.headers.get("Content-Type", ""), body
    except urllib.error.HTTPError as exc:
        body = exc.read(_MAX_HEALTHCHECK_BYTES).decode("utf-8", errors="replace") if exc.fp else ""
        return exc.code, exc.headers.get("Content-Type", "") if exc.headers else "", body
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TimeoutError(f"Fetch timeout ({timeout:g}s): {url}") from None
        raise


# Runs in a child process: argv is repo id, revision, endpoint, cache dir.
_DOWNLOAD_SCRIPT = """\
import sys
from huggingface_hub import snapshot_download
repo_id, revision, endpoint, cache_dir = sys.argv[1:5]
print(snapshot_download(
    repo_id=repo_id, revision=revision, endpoint=endpoint, cache_dir=cache_dir or None,
))
"""


def _download_command(host: str, cfg: ModelCfg) -> list[str]:
    return [
        sys.executable, "-c", _DOWNLOAD_SCRIPT,
        cfg.name, cfg.revision, host.rstrip("/"), cfg.cache_dir or "",
    ]


async def _download_snapshot(host: str, cfg: ModelCfg, timeout: float) -> str:
    """Download the model snapshot from *host*; return its local path.

    The download runs in a child process so it can be stopped: on timeout
    or cancellation the process is killed before this returns.

    Raises:
        TimeoutError: The download did not finish within *timeout* seconds.
        RuntimeError: The download process failed.
    """
    proc = await asyncio.create_subprocess_exec(
        *_download_command(host, cfg),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        raise TimeoutError(f"Pipeline load timeout ({timeout:g}s) on {host}") from None
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        lines = stderr.decode("utf-8", errors="replace").strip().splitlines()
        raise RuntimeError(
            f"Model download failed on {host} (exit {proc.returncode}): "
            f"{lines[-1] if lines else 'no output'}"
        )
    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    if not lines:
        raise RuntimeError(f"Model download on {host} reported no snapshot path")
    return lines[-1]


def _load_model(local_path: str) -> Any:
    """Instantiate the sentence-transformers model from a local snapshot."""
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(local_path, device="cpu")


def _model_cache_path(cfg: ModelCfg) -> Path:
    if cfg.cache_dir:
        root = Path(cfg.cache_dir)
    else:
        from huggingface_hub import constants

        root = Path(constants.HF_HUB_CACHE)
    return root / f"models--{cfg.name.replace('/', '--')}"


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ModelLoader:
    """Memoized, host-resilient loader for the on-device embedding model.

    Args:
        cfg: Model name, revision, hosts, timeouts and cache location.
        events: Event log to write to (a fresh one is created if omitted).
    """

    def __init__(self, cfg: ModelCfg, events: ModelEventLog | None = None) -> None:
        self.cfg = cfg
        self.events = events or ModelEventLog(cfg.event_limit)
        self._pipeline: Any = None
        self._task: asyncio.Future[Any] | None = None

    @property
    def hosts(self) -> list[str]:
        return resolve_hosts(self.cfg)

    @property
    def loaded(self) -> bool:
        return self._pipeline is not None

    def snapshot(self) -> ModelDebugSnapshot:
        return ModelDebugSnapshot(model_loaded=self.loaded, hosts=self.hosts, events=self.events.events())

    async def get_pipeline(self) -> Any:
        """Return the loaded model, loading it on first use."""
        if self._pipeline is not None:
            return self._pipeline
        if self._task is None:
            self._task = asyncio.ensure_future(self._load())
        task = self._task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._task is task and task.done():
                self._task = None
            raise

    async def _load(self) -> Any:
        hosts = self.hosts
        self.events.emit(
            "model-load-start",
            detail=f"hosts={', '.join(hosts)} | cache={self.cfg.cache_dir or 'default'}",
        )
        last_error: BaseException | None = None

        for host in hosts:
            try:
                pipeline = await self._load_from_host(host)
            except Exception as exc:
                last_error = exc
                self.events.emit("host-attempt-failed", host=host, detail=format_detail(exc))
                logger.warning("Model load failed on host %s: %s", host, format_detail(exc))
                continue

            self._pipeline = pipeline
            self.events.emit("model-load-success", host=host, detail=self.cfg.name)
            logger.info("Embedding model %s loaded from %s", self.cfg.name, host)
            return pipeline

        reason = str(last_error) if last_error is not None else "no hosts configured"
        self.events.emit(
            "model-load-failed",
            detail=f"hosts={', '.join(hosts)} | last={format_detail(last_error)}",
        )
        raise ModelLoadError(
            f"Unable to load embedding model from all hosts ({', '.join(hosts)}). "
            f"Last error: {reason}",
            hosts=hosts,
            last_error=last_error,
        )

    async def _load_from_host(self, host: str) -> Any:
        await self.check_host(host)
        try:
            pipeline = await self._instantiate(host)
        except Exception as exc:
            if not looks_like_corrupt_cache(exc):
                raise
            logger.warning("Invalid model cache detected on %s; clearing it and retrying once", host)
            await self.clear_cache()
            await self.check_host(host)
            pipeline = await self._instantiate(host, retry=True)
        self.events.emit("pipeline-load-success", host=host, detail=self.cfg.name)
        return pipeline

    async def _instantiate(self, host: str, *, retry: bool = False) -> Any:
        label = f"{self.cfg.name} (retry-after-cache-clear)" if retry else self.cfg.name
        self.events.emit("pipeline-load-start", host=host, detail=label)
        try:
            local_path = await _download_snapshot(host, self.cfg, self.cfg.pipeline_load_timeout)
            return await asyncio.to_thread(_load_model, local_path)
        except Exception as exc:
            detail = str(exc) if isinstance(exc, TimeoutError) else format_detail(exc)
            self.events.emit("pipeline-load-failed", host=host, detail=detail)
            raise

    async def check_host(self, host: str) -> None:
        """Verify that *host* serves the model's metadata files as JSON.

        Raises:
            HostCheckError: Non-2xx status, HTML body, or invalid JSON.
            TimeoutError: A fetch exceeded ``host_check_timeout``.
            OSError: The host could not be reached.
        """
        host = normalize_host(host)
        revision = urllib.parse.quote(self.cfg.revision, safe="")
        base = f"{host}{self.cfg.name}/resolve/{revision}/"
        timeout = self.cfg.host_check_timeout

        for file in self.cfg.healthcheck_files:
            url = f"{base}{file}"
            self.events.emit("host-check-start", host=host, url=url, detail=file)
            try:
                status, content_type, body = await asyncio.to_thread(_fetch_text, url, timeout)
            except TimeoutError as exc:
                self.events.emit("host-check-failed", host=host, url=url, detail=str(exc))
                raise
            except OSError as exc:
                self.events.emit("host-check-failed", host=host, url=url, detail=format_detail(exc))
                raise

            message = None
            if not 200 <= status < 300:
                message = f"Host check failed ({status}): {url}"
            elif is_html_payload(content_type, body):
                message = f"Host check returned HTML instead of JSON: {url}"
            else:
                try:
                    json.loads(body)
                except ValueError:
                    message = f"Host check got invalid JSON: {url}"
            if message is not None:
                self.events.emit("host-check-failed", host=host, url=url, detail=message)
                raise HostCheckError(message)

            self.events.emit("host-check-success", host=host, url=url, detail=file)

    async def clear_cache(self) -> None:
        """Delete the cached model snapshot. Failures are logged, not raised."""
        try:
            path = _model_cache_path(self.cfg)
        except ImportError as exc:
            self.events.emit("cache-clear-failed", detail=format_detail(exc))
            return
        self.events.emit("cache-clear-start", detail=str(path))
        try:
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)
        except OSError as exc:
            self.events.emit("cache-clear-failed", detail=format_detail(exc))
            logger.warning("Could not clear model cache %s: %s", path, exc)
            return
        self.events.emit("cache-clear-success", detail=str(path))
