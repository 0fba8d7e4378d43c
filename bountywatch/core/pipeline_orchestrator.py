"""
Scan runner: plan → fetch → extract → diff → persist → output.

One ``ScanRunner.run()`` call is one run. Per-resource failures are captured
into that resource's outcome; only an unreadable fingerprint store at the
start makes the whole run fatal.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .change_detector import ChangeDetector, cheap_signature
from .coalescer import Clock, SystemClock
from .config import WatchConfig
from .errors import BountyWatchError, ExtractionError, PersistenceError
from .extractor import EntityExtractor
from .fetch_orchestrator import FetchOrchestrator, WorkResult
from .fingerprint_store import FingerprintStore
from .interfaces import Sink
from .models import (
    Fingerprint,
    OutcomeState,
    ResourceDiff,
    ResourceOutcome,
    RunStatus,
    RunSummary,
    ScanKind,
    WatchedResource,
)
from .plugin_loader import build_backends
from .resilience import CredentialPool
from .scan_scheduler import ScanPlan, ScanPolicy
from ..plugins.algora.strategies import default_strategies

logger = logging.getLogger(__name__)


@dataclass
class ResourceResult:
    outcome: ResourceOutcome
    diff: Optional[ResourceDiff] = None
    fingerprint: Optional[Fingerprint] = None
    newly_watched: bool = False


class ScanRunner:
    def __init__(
        self,
        *,
        store: FingerprintStore,
        orchestrator: FetchOrchestrator,
        extractor: EntityExtractor,
        policy: ScanPolicy,
        detector: Optional[ChangeDetector] = None,
        sinks: Sequence[Sink] = (),
        deadline: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.extractor = extractor
        self.policy = policy
        self.detector = detector or ChangeDetector()
        self.sinks = list(sinks)
        self.deadline = deadline
        self.clock = clock or SystemClock()
        self._run_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Per resource
    async def _full(
        self,
        resource: WatchedResource,
        previous: Optional[Fingerprint],
        signature: Optional[str] = None,
    ) -> ResourceResult:
        raw = await self.orchestrator.fetch(resource)

        backend = next((b for b in self.orchestrator.backends if b.name == raw.backend), None)
        if signature is None and backend is not None and backend.capabilities.fetches_static_html:
            signature = cheap_signature(raw.text)

        try:
            snapshot = await self.extractor.extract(resource, raw)
        except ExtractionError as e:
            # previous fingerprint and snapshot stay as they are
            logger.warning("%s: %s – keeping stored state", resource.id, e)
            return ResourceResult(
                outcome=ResourceOutcome(
                    resource_id=resource.id,
                    state=OutcomeState.ERRORED,
                    error=f"{type(e).__name__}: {e}",
                    warnings=[str(e)],
                    entity_count=0,
                    backend=raw.backend,
                ),
            )

        previous_snapshot = await self.store.load_snapshot(resource.id)
        diff, fingerprint = self.detector.detect(
            resource.id, previous, previous_snapshot, snapshot, self.clock.now(), signature=signature
        )
        await self.store.save(fingerprint, snapshot)

        if diff.is_first_run:
            state = OutcomeState.FIRST_RUN
        elif diff.has_changes:
            state = OutcomeState.CHANGED
        else:
            state = OutcomeState.UNCHANGED
        return ResourceResult(
            outcome=ResourceOutcome(
                resource_id=resource.id,
                state=state,
                entity_count=len(snapshot),
                backend=raw.backend,
            ),
            diff=diff,
            fingerprint=fingerprint,
            newly_watched=previous is None,
        )

    async def _cheap(self, resource: WatchedResource, previous: Optional[Fingerprint]) -> ResourceResult:
        raw = await self.orchestrator.fetch(resource, backends=self.orchestrator.cheap_backends or None)
        check, fingerprint = self.detector.check(resource.id, previous, raw.text, self.clock.now())
        if check.maybe_changed:
            logger.info("%s: signature %s -> %s, running full scan", resource.id, check.previous_signature, check.signature)
            return await self._full(resource, previous, signature=check.signature)

        await self.store.save(fingerprint)
        return ResourceResult(
            outcome=ResourceOutcome(
                resource_id=resource.id,
                state=OutcomeState.UNCHANGED,
                entity_count=fingerprint.entity_count_estimate,
                backend=raw.backend,
            ),
            fingerprint=fingerprint,
        )

    # ------------------------------------------------------------------ #
    # Run
    @staticmethod
    def _outcome_for(result: WorkResult) -> ResourceOutcome:
        if result.skipped:
            return ResourceOutcome(resource_id=result.resource_id, state=OutcomeState.SKIPPED)
        error = result.error
        if not isinstance(error, BountyWatchError):
            logger.error("%s: unexpected error", result.resource_id, exc_info=error)
        return ResourceOutcome(
            resource_id=result.resource_id,
            state=OutcomeState.ERRORED,
            error=f"{type(error).__name__}: {error}",
        )

    async def _retire(self, resource_ids: Sequence[str]) -> List[ResourceDiff]:
        diffs = []
        for resource_id in resource_ids:
            try:
                snapshot = await self.store.load_snapshot(resource_id)
                await self.store.retire([resource_id])
            except PersistenceError as e:
                logger.error("Could not retire %s: %s", resource_id, e)
                continue
            diffs.append(self.detector.retired_diff(resource_id, snapshot))
        return diffs

    async def _emit(self, summary: RunSummary) -> None:
        for sink in self.sinks:
            try:
                await sink.handle(summary)
            except (OSError, BountyWatchError) as e:
                logger.error("Sink %s failed for run %s: %s", sink.name, summary.run_id, e)

    async def run(
        self,
        resources: Sequence[WatchedResource],
        pending: Iterable[str] = (),
        force_full: bool = False,
    ) -> RunSummary:
        async with self._run_lock:
            return await self._run(resources, set(pending), force_full)

    async def _run(self, resources: Sequence[WatchedResource], pending: set, force_full: bool) -> RunSummary:
        run_id = uuid.uuid4().hex[:12]
        started_at = self.clock.now()

        try:
            fingerprints = await self.store.load_all()
            last_full_scan_at = await self.store.get_last_full_scan_at()
        except PersistenceError as e:
            logger.error("Run %s aborted, fingerprint store unreadable: %s", run_id, e)
            summary = RunSummary(
                run_id=run_id,
                kind=ScanKind.FULL if force_full else ScanKind.TARGETED,
                status=RunStatus.FATAL,
                started_at=started_at,
                finished_at=self.clock.now(),
                error=str(e),
            )
            await self._emit(summary)
            return summary

        plan: ScanPlan = self.policy.plan(
            resources, fingerprints, pending, last_full_scan_at, started_at, force_full=force_full
        )
        logger.info(
            "Run %s: %s scan (%s) – %d full, %d cheap",
            run_id, plan.kind.value, plan.reason, len(plan.full_scan), len(plan.cheap_poll),
        )

        by_id = {r.id: r for r in resources}
        full_ids = set(plan.full_scan)
        self.orchestrator.breaker.reset()

        async def work(resource: WatchedResource) -> ResourceResult:
            previous = fingerprints.get(resource.id)
            if resource.id in full_ids:
                return await self._full(resource, previous)
            return await self._cheap(resource, previous)

        targets = [by_id[rid] for rid in plan.resource_ids]
        results = await self.orchestrator.run(targets, work, deadline=self.deadline)

        outcomes: Dict[str, ResourceOutcome] = {}
        diffs: List[ResourceDiff] = []
        updated_fps: Dict[str, Fingerprint] = {}
        resources_added: List[str] = []
        for rid, result in sorted(results.items()):
            if not result.ok:
                outcomes[rid] = self._outcome_for(result)
                log = logger.info if result.skipped else logger.warning
                log("%s: %s %s", rid, outcomes[rid].state.value, outcomes[rid].error or "")
                continue
            value: ResourceResult = result.value
            outcomes[rid] = value.outcome
            if value.diff is not None:
                diffs.append(value.diff)
            if value.fingerprint is not None:
                updated_fps[rid] = value.fingerprint
            if value.newly_watched:
                resources_added.append(rid)
            logger.info(
                "%s: %s (%d entities via %s)",
                rid, value.outcome.state.value, value.outcome.entity_count, value.outcome.backend,
            )

        retired_diffs = await self._retire(plan.retire) if plan.kind is ScanKind.FULL else []
        change_set = self.detector.merge(
            diffs + retired_diffs,
            resources_added=resources_added,
            resources_removed=[d.resource_id for d in retired_diffs],
        )

        status = RunStatus.SUCCESS
        if any(o.state in (OutcomeState.ERRORED, OutcomeState.SKIPPED) for o in outcomes.values()):
            status = RunStatus.PARTIAL

        if plan.kind is ScanKind.FULL:
            try:
                await self.store.set_last_full_scan_at(started_at)
            except PersistenceError as e:
                logger.error("Could not record full scan time: %s", e)
                status = RunStatus.PARTIAL

        summary = RunSummary(
            run_id=run_id,
            kind=plan.kind,
            status=status,
            started_at=started_at,
            finished_at=self.clock.now(),
            change_set=change_set,
            outcomes=outcomes,
            fingerprints=updated_fps,
        )
        logger.info("Run %s finished: %s – %s – %s", run_id, status.value, change_set.summary, summary.counts())
        await self._emit(summary)
        return summary

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.extractor.close()


def build_runner(config: WatchConfig, store: FingerprintStore, sinks: Sequence[Sink] = ()) -> ScanRunner:
    """Wire the fetch pipeline from settings."""
    settings = config.settings
    credentials = CredentialPool.from_env(cooldown=settings.firecrawl.credential_cooldown)

    names = list(dict.fromkeys(settings.fetch.backends + settings.fetch.cheap_backends))
    instances = dict(zip(names, build_backends(names, settings, credentials)))
    cheap = [instances[n] for n in settings.fetch.cheap_backends]
    for backend in cheap:
        if not backend.capabilities.fetches_static_html:
            logger.warning("Cheap-poll backend %s does not fetch static HTML", backend.name)

    orchestrator = FetchOrchestrator.from_settings(
        settings.fetch,
        [instances[n] for n in settings.fetch.backends],
        cheap_backends=cheap,
        credentials=credentials,
    )
    logger.info(
        "Backends: %s (cheap: %s), %d API keys",
        ", ".join(settings.fetch.backends), ", ".join(settings.fetch.cheap_backends), len(credentials),
    )
    return ScanRunner(
        store=store,
        orchestrator=orchestrator,
        extractor=EntityExtractor(default_strategies(settings.algora, timeout=settings.fetch.timeout)),
        policy=ScanPolicy(settings.scan.full_scan_cron, timezone=settings.scan.timezone),
        sinks=sinks,
        deadline=settings.fetch.run_deadline_seconds,
    )
