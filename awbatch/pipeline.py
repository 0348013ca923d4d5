"""Batch analysis orchestration.

One run: fetch unprocessed screenshots, segment them into batches, and for
each batch submit its screenshots chunk by chunk to the LLM provider, storing
whatever observations come back. A failing chunk is logged and skipped; a
batch is only marked failed when it yields no observation at all.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from awbatch.analysis.batching import (
    Batch,
    Screenshot,
    WindowSwitch,
    batching_config_for,
    create_event_batches,
    create_time_batches,
    split_into_chunks,
)
from awbatch.chunking import ChunkController
from awbatch.config import BATCHING_MODES, WorkerConfig
from awbatch.metrics import MetricsCollector
from awbatch.models import (
    LLMError,
    LLMRequest,
    Observation,
    ResponseParseError,
    parse_analysis_response,
    to_observations,
)
from awbatch.models.client import guess_mime
from awbatch.prompt import build_analysis_prompt

LOG = logging.getLogger("aw-batch-worker")

SECONDS_PER_DAY = 24 * 60 * 60


class AnalysisRepository(Protocol):
    """Storage and settings the pipeline depends on."""

    def fetch_unprocessed_screenshots(self, since_ts: float, limit: int) -> List[Screenshot]: ...

    def get_window_switch_events(self, start_ts: float, end_ts: float, limit: int) -> List[WindowSwitch]: ...

    def get_setting(self, key: str) -> Optional[str]: ...

    def save_batch_with_screenshots(self, start: float, end: float, screenshot_ids: List[str]) -> Optional[int]: ...

    def update_batch_status(self, batch_id: int, status: str, error: Optional[str] = None) -> None: ...

    def save_observation(
        self,
        batch_id: int,
        start: float,
        end: float,
        text: str,
        model_label: Optional[str] = None,
        context_type: Optional[str] = None,
        entities_json: Optional[str] = None,
    ) -> None: ...


@dataclass
class TranscriptionResult:
    observations: List[Observation] = field(default_factory=list)
    failed_chunks: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    chunk_total: int = 0


class AnalysisPipeline:
    def __init__(
        self,
        repository: AnalysisRepository,
        provider,
        metrics: MetricsCollector,
        controller: ChunkController,
        config: WorkerConfig,
        sleep=time.sleep,
        clock=time.time,
    ):
        self.repository = repository
        self.provider = provider
        self.metrics = metrics
        self.controller = controller
        self.config = config
        self.sleep = sleep
        self.clock = clock
        self._run_lock = threading.Lock()

    @property
    def model_label(self) -> str:
        return self.provider.label

    def batching_mode(self) -> str:
        mode = (self.repository.get_setting("batching_mode") or "event").strip().lower()
        if mode not in BATCHING_MODES:
            LOG.warning("Unknown batching_mode %r, using event", mode)
            return "event"
        return mode

    def build_batches(self, screenshots: Sequence[Screenshot], now: Optional[float] = None) -> List[Batch]:
        b = self.config.batching
        cfg = batching_config_for(
            self.repository.get_setting("capture_interval_ms"),
            target_duration=b.target_duration_s,
            min_batch_duration=b.min_batch_duration_s,
            max_batch_duration=b.max_batch_duration_s,
        )
        if not screenshots:
            return []
        if self.batching_mode() == "time":
            return create_time_batches(screenshots, cfg, now=now)

        times = [s.captured_at for s in screenshots]
        switches = self.repository.get_window_switch_events(
            min(times), max(times), b.window_switch_limit
        )
        return create_event_batches(screenshots, switches, cfg, now=now)

    def process_recordings(self) -> bool:
        """Run one analysis pass. Returns False if a pass was already running."""
        if not self._run_lock.acquire(blocking=False):
            LOG.info("Previous analysis run still in progress, skipping this one")
            return False
        try:
            self._run_once()
        except Exception:
            LOG.exception("Error processing recordings")
        finally:
            self._run_lock.release()
        return True

    def _run_once(self) -> None:
        now = self.clock()
        b = self.config.batching
        since = now - b.lookback_days * SECONDS_PER_DAY
        screenshots = self.repository.fetch_unprocessed_screenshots(since, b.fetch_limit)
        if not screenshots:
            LOG.debug("No unprocessed screenshots")
            return

        LOG.info(f"Found {len(screenshots)} unprocessed screenshots, grouping...")
        batches = self.build_batches(screenshots, now=now)
        for batch in batches:
            batch_id = self.repository.save_batch_with_screenshots(
                batch.start, batch.end, [s.id for s in batch.screenshots]
            )
            if batch_id is None:
                LOG.warning("Batch %.0f-%.0f was not saved, skipping", batch.start, batch.end)
                continue
            LOG.info(
                f"Created batch #{batch_id} ({len(batch.screenshots)} shots, "
                f"{round(batch.duration)}s)"
            )
            self.repository.update_batch_status(batch_id, "pending")
            self.process_batch(batch_id, batch)

    def process_batch(self, batch_id: int, batch: Batch) -> str:
        """Transcribe one batch and store its observations; returns the final status.

        A batch is failed only when no observation could be stored.
        """
        LOG.info(f"Processing batch #{batch_id}...")
        self.repository.update_batch_status(batch_id, "processing")
        try:
            prompt = build_analysis_prompt(batch.context)
            result = self.transcribe_batch(batch.screenshots, prompt)
        except Exception as e:
            LOG.error(f"Failed to process batch #{batch_id}: {e!r}")
            self.repository.update_batch_status(batch_id, "failed", str(e))
            return "failed"

        saved = 0
        store_error = None
        try:
            for obs in result.observations:
                self.repository.save_observation(
                    batch_id,
                    obs.start,
                    obs.end,
                    obs.text,
                    self.model_label,
                    obs.context_type,
                    obs.entities_json,
                )
                saved += 1
        except Exception as e:
            LOG.error(f"Failed to store observations of batch #{batch_id}: {e!r}")
            store_error = str(e)

        if not saved:
            error = store_error or (result.errors[-1] if result.errors else "No observations")
            LOG.error(f"Batch #{batch_id} produced no observations: {error}")
            self.repository.update_batch_status(batch_id, "failed", error)
            return "failed"

        self.repository.update_batch_status(batch_id, "analyzed")
        LOG.info(
            f"Batch #{batch_id} complete: {saved}/{len(result.observations)} observations stored, "
            f"{len(result.failed_chunks)}/{result.chunk_total} chunks failed"
        )
        return "analyzed"

    def transcribe_batch(self, screenshots: Sequence[Screenshot], prompt: str) -> TranscriptionResult:
        """Submit ``screenshots`` in sequential chunks, keeping partial results."""
        result = TranscriptionResult()
        if not screenshots:
            return result

        p = self.config.provider
        adaptive = self.config.adaptive_chunking
        size = self.controller.chunk_size(adaptive, p.max_screenshots_per_request)
        chunks = split_into_chunks(list(screenshots), size)
        result.chunk_total = len(chunks)
        if len(chunks) > 1:
            LOG.info(
                f"Processing {len(chunks)} chunks of up to {size} screenshots"
                f"{' (adaptive)' if adaptive.enabled else ''}"
            )

        for i, chunk in enumerate(chunks):
            if i > 0 and p.chunk_delay_ms > 0:
                self.sleep(p.chunk_delay_ms / 1000.0)
            request = LLMRequest(
                prompt=prompt,
                images=[(s.file_path, guess_mime(s.file_path)) for s in chunk],
                chunk_index=i,
                chunk_total=len(chunks),
            )
            try:
                observations = self._transcribe_chunk(request, chunk)
            except (LLMError, ResponseParseError) as e:
                LOG.error(f"Chunk {i + 1}/{len(chunks)} failed: {e}")
                result.failed_chunks.append(i)
                result.errors.append(str(e))
                continue
            result.observations.extend(observations)
            LOG.debug(f"Chunk {i + 1}/{len(chunks)} complete: {len(observations)} observations")

        return result

    def _transcribe_chunk(self, request: LLMRequest, chunk: Sequence[Screenshot]) -> List[Observation]:
        text = self._call(request)
        return to_observations(parse_analysis_response(text), chunk)

    def _call(self, request: LLMRequest) -> str:
        if not getattr(self.provider, "streaming", False):
            return self.provider.generate_content(request)
        try:
            return self.provider.stream_content(request)
        except LLMError as e:
            LOG.warning(f"Streaming failed, falling back to non-streaming: {e}")
            return self.provider.generate_content(request)


class AnalysisJob:
    """Fires :meth:`AnalysisPipeline.process_recordings` on a fixed interval.

    Runs happen on their own thread, so a slow run never delays the timer;
    fires that land while a run is in progress are dropped. :meth:`stop`
    waits for the in-flight run so that no batch is left half processed.
    """

    def __init__(self, pipeline: AnalysisPipeline, interval_s: float = 60.0, initial_delay_s: float = 5.0):
        self.pipeline = pipeline
        self.interval_s = interval_s
        self.initial_delay_s = initial_delay_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_thread: Optional[threading.Thread] = None
        self._fire_lock = threading.Lock()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        LOG.info("Starting background analysis job (every %.0fs)", self.interval_s)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="analysis-timer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the timer and wait up to ``timeout`` seconds for a running pass."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        with self._fire_lock:
            run = self._run_thread
        if run is not None and run.is_alive():
            LOG.info("Waiting for the running analysis pass to finish...")
            run.join(timeout=timeout)
            if run.is_alive():
                LOG.warning("Analysis pass still running after %.0fs", timeout)

    def fire(self) -> threading.Thread:
        """Start a run unless one is in flight; returns the run's thread."""
        with self._fire_lock:
            if self._run_thread is not None and self._run_thread.is_alive():
                LOG.info("Previous analysis run still in progress, skipping this one")
                return self._run_thread
            t = threading.Thread(target=self.pipeline.process_recordings, name="analysis-run", daemon=True)
            t.start()
            self._run_thread = t
            return t

    def _run(self) -> None:
        if self._stop_event.wait(self.initial_delay_s):
            return
        while not self._stop_event.is_set():
            self.fire()
            self._stop_event.wait(self.interval_s)
