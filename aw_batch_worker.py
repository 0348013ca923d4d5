#!/usr/bin/env python3
"""Main CLI entry point for aw-batch-worker."""

import os
import json
import time
import logging
from datetime import datetime, timedelta
from typing import Any, Dict

import click
from aw_client import ActivityWatchClient
from aw_core import Event

from awbatch.analysis.context import rule_from_config, set_context_rules
from awbatch.analysis.io import AWWindowSource
from awbatch.chunking import ChunkController
from awbatch.config import ConfigError, apply_overrides, load_config
from awbatch.metrics import MetricsCollector
from awbatch.models import get_provider
from awbatch.pipeline import AnalysisJob, AnalysisPipeline
from awbatch.prompt import PROMPT_REV
from awbatch.storage import SpoolRepository
from awbatch.utils.helpers import sha1

LOG = logging.getLogger("aw-batch-worker")


class AWSink:
    """ActivityWatch event sink for batch observations."""

    def __init__(self, testing: bool, bucket_suffix: str, model_label: str):
        self.client = ActivityWatchClient("aw-batch-worker", testing=testing)
        self.client.wait_for_start()
        self.client.connect()
        self.bucket = f"{self.client.client_name}_{self.client.client_hostname}"
        if bucket_suffix:
            self.bucket = f"aw-batch-worker-{bucket_suffix}_{self.client.client_hostname}"
        self.eventtype = "app.screenshot.observation"
        self.model_label = model_label
        self.client.create_bucket(self.bucket, self.eventtype, queued=False)
        LOG.info("Created bucket: %s", self.bucket)

    def push(self, ts: datetime, duration: timedelta, obs: Dict[str, Any]):
        """Push one observation to ActivityWatch."""
        payload = {
            "text": obs.get("text"),
            "batch_id": obs.get("batch_id"),
            "context_type": obs.get("context_type"),
            "entities": json.loads(obs["entities"]) if obs.get("entities") else None,
            "llm": {"model": self.model_label, "prompt_rev": PROMPT_REV},
        }
        ev = Event(timestamp=ts, duration=duration, data=payload)
        self.client.insert_event(self.bucket, ev)


def log_metrics(metrics: MetricsCollector):
    s = metrics.get_summary()
    if not s.total_requests:
        return
    LOG.info(
        "LLM requests: %d ok / %d failed | avg=%dms p50=%.0fms p95=%.0fms | "
        "tokens %d/%d (%.2f tok/s) | errors=%s",
        s.successful_requests,
        s.failed_requests,
        s.average_duration_ms,
        s.p50_duration_ms,
        s.p95_duration_ms,
        s.total_prompt_tokens,
        s.total_completion_tokens,
        s.tokens_per_second,
        {k: v for k, v in s.errors_by_category.items() if v},
    )


@click.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML/JSON worker config (provider, chunking, batching, settings).",
)
@click.option(
    "--spool-dir",
    type=click.Path(file_okay=False, exists=True),
    required=True,
    help="Directory containing spool JSON from the screenshot watcher.",
)
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False),
    help="Where to keep batch/observation state (default: <spool-dir>/.batch_state.json).",
)
@click.option(
    "--aw-host",
    default=None,
    help="ActivityWatch server URL to read window switches from, e.g. http://127.0.0.1:5600. "
    "Without it, switches are derived from the spool records.",
)
@click.option(
    "--window-bucket",
    default=None,
    help="Window watcher bucket (default: aw-watcher-window_<hostname>).",
)
@click.option(
    "--emit-aw/--no-emit-aw",
    default=False,
    show_default=True,
    help="Push observations into an ActivityWatch bucket.",
)
@click.option(
    "--bucket-suffix",
    default="observations",
    show_default=True,
    help="Suffix for AW bucket name.",
)
@click.option(
    "--testing", is_flag=True, default=False, help="ActivityWatch client testing mode."
)
@click.option(
    "--interval",
    type=float,
    default=60.0,
    show_default=True,
    help="Seconds between analysis runs.",
)
@click.option("--once", is_flag=True, default=False, help="Run a single pass and exit.")
@click.option(
    "--batching",
    type=click.Choice(["time", "event"], case_sensitive=False),
    default=None,
    help="Segmentation strategy (overrides settings.batching_mode).",
)
@click.option(
    "--adaptive/--no-adaptive",
    default=None,
    help="Enable latency-driven chunk sizing (overrides adaptive_chunking.enabled).",
)
@click.option(
    "--stream/--no-stream",
    default=None,
    help="Prefer streaming responses (overrides provider.streaming).",
)
@click.option("--model", default=None, help="Override provider.model.")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR"], case_sensitive=False),
)
def main(
    config_file,
    spool_dir,
    state_file,
    aw_host,
    window_bucket,
    emit_aw,
    bucket_suffix,
    testing,
    interval,
    once,
    batching,
    adaptive,
    stream,
    model,
    log_level,
):
    """ActivityWatch batch worker - segment screenshots and describe them with an LLM."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        cfg = load_config(config_file)
        apply_overrides(
            cfg,
            batching=batching.lower() if batching else None,
            adaptive=adaptive,
            stream=stream,
            model=model,
        )
        set_context_rules([rule_from_config(r) for r in cfg.context_rules])
        metrics = MetricsCollector()
        provider = get_provider(cfg.provider, metrics)
    except (ConfigError, ValueError) as e:
        raise click.UsageError(str(e))

    cfg_id = sha1(json.dumps(cfg.settings, sort_keys=True) + provider.label)
    LOG.info(
        "Starting aw-batch-worker | model=%s adaptive=%s streaming=%s (config id=%s)",
        provider.label,
        cfg.adaptive_chunking.enabled,
        provider.streaming,
        cfg_id[:8],
    )

    window_source = None
    if aw_host:
        if not window_bucket:
            hostname = ActivityWatchClient("temp", testing=testing).client_hostname
            window_bucket = f"aw-watcher-window_{hostname}"
        window_source = AWWindowSource(aw_host, window_bucket)
        LOG.info("Window switches from %s (%s)", aw_host, window_bucket)

    sink = AWSink(testing, bucket_suffix, provider.label) if emit_aw else None
    repo = SpoolRepository(
        os.path.abspath(spool_dir),
        cfg,
        state_path=state_file,
        window_source=window_source,
        sink=sink,
    )
    repo.fail_interrupted_batches()
    controller = ChunkController(metrics, initial_size=cfg.adaptive_chunking.max_size)
    pipeline = AnalysisPipeline(repo, provider, metrics, controller, cfg)

    if once:
        pipeline.process_recordings()
        log_metrics(metrics)
        return

    job = AnalysisJob(pipeline, interval_s=interval)
    job.start()
    try:
        while True:
            time.sleep(max(interval, 60.0) * 10)
            log_metrics(metrics)
    except KeyboardInterrupt:
        LOG.info("Exiting.")
    finally:
        job.stop()
        log_metrics(metrics)


if __name__ == "__main__":
    main()
