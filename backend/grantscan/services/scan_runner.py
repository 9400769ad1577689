"""Drives one scan job: aggregate, enrich from detail pages, score with bounded concurrency, stream progress."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from grantscan.config import SettingsProvider
from grantscan.models.company import CompanyProfile
from grantscan.models.job import JobStage, JobStatus, ProgramFailure, ScanJob, ScoredProgram
from grantscan.models.program import Program
from grantscan.services.aggregator import AggregationResult, Aggregator, SourceSelection
from grantscan.services.detail_pages import DetailEnricher
from grantscan.services.fit_scoring import FitScoringEngine
from grantscan.services.progress import ProgressChannel
from grantscan.services.resilience import ErrorKind, InvalidCredential, PipelineError, user_message

logger = logging.getLogger(__name__)

STAGE_PHASES = {JobStage.fetching: 1, JobStage.scoring: 2, JobStage.finalizing: 3}


class ScanRunner:
    def __init__(
        self,
        settings: SettingsProvider,
        aggregator: Aggregator,
        engine: FitScoringEngine,
        enricher: Optional[DetailEnricher] = None,
    ) -> None:
        self._settings = settings
        self._aggregator = aggregator
        self._engine = engine
        self._enricher = enricher

    @staticmethod
    def _should_stop(job: ScanJob, channel: ProgressChannel) -> bool:
        return job.is_terminal or job.cancel_requested or channel.disconnected

    def _enter_stage(self, job: ScanJob, channel: ProgressChannel, stage: JobStage) -> None:
        job.stage = stage.value
        channel.emit_progress(stage.value, job.current, job.total, phase=STAGE_PHASES[stage])

    def _fail(
        self,
        job: ScanJob,
        channel: ProgressChannel,
        message: str,
        kind: ErrorKind = ErrorKind.upstream,
    ) -> ScanJob:
        if job.transition(JobStatus.failed):
            job.error_message = message
            job.error_kind = kind.value
            logger.warning("Scan %s failed: %s", job.job_id, message)
            channel.error(message)
        return job

    def _cancel(self, job: ScanJob, channel: ProgressChannel) -> ScanJob:
        if job.transition(JobStatus.cancelled):
            logger.info(
                "Scan %s cancelled at %d/%d (%s)",
                job.job_id,
                job.current,
                job.total,
                "client disconnected" if channel.disconnected else "cancel requested",
            )
            # Partial results are dropped with the job; nothing is persisted here.
            channel.close()
        return job

    async def run(
        self,
        job: ScanJob,
        company: CompanyProfile,
        selection: SourceSelection,
        channel: ProgressChannel,
    ) -> ScanJob:
        try:
            return await self._run(job, company, selection, channel)
        except Exception as exc:
            logger.exception("Scan %s crashed", job.job_id)
            return self._fail(job, channel, user_message(ErrorKind.upstream, str(exc)))

    async def _run(
        self,
        job: ScanJob,
        company: CompanyProfile,
        selection: SourceSelection,
        channel: ProgressChannel,
    ) -> ScanJob:
        job.transition(JobStatus.running)
        logger.info("Scan %s started for %r with sources %s", job.job_id, company.name, selection.sources)
        self._enter_stage(job, channel, JobStage.fetching)

        try:
            aggregation = await self._aggregator.aggregate(company, selection)
        except PipelineError as exc:
            return self._fail(job, channel, exc.user_message(), exc.kind)
        if aggregation.all_failed:
            detail = "; ".join(f"{f.source}: {f.kind}" for f in aggregation.failures)
            return self._fail(job, channel, f"No program source could be reached ({detail})")
        if self._should_stop(job, channel):
            return self._cancel(job, channel)

        programs = list(aggregation.programs)
        if self._enricher is not None:
            try:
                programs, job.detail_failures = await self._enricher.enrich_all(
                    programs, lambda: self._should_stop(job, channel)
                )
            except InvalidCredential as exc:
                return self._fail(job, channel, exc.user_message(), exc.kind)
            if self._should_stop(job, channel):
                return self._cancel(job, channel)

        job.programs = programs
        job.total = len(job.programs)
        self._enter_stage(job, channel, JobStage.scoring)
        await self._score_all(job, aggregation.company or company, channel)

        if job.status == JobStatus.failed:
            return job
        if self._should_stop(job, channel):
            return self._cancel(job, channel)

        self._enter_stage(job, channel, JobStage.finalizing)
        job.transition(JobStatus.completed)
        channel.complete(self.result_payload(job, aggregation))
        logger.info(
            "Scan %s completed: %d scored, %d failed", job.job_id, len(job.results), len(job.failures)
        )
        return job

    async def _score_all(self, job: ScanJob, company: CompanyProfile, channel: ProgressChannel) -> None:
        limit = max(1, int(self._settings.current().scoring_concurrency))
        semaphore = asyncio.Semaphore(limit)
        tasks = []
        for program in job.programs:
            await semaphore.acquire()
            if self._should_stop(job, channel):
                semaphore.release()
                break
            tasks.append(asyncio.create_task(self._score_one(job, company, program, channel, semaphore)))
        if tasks:
            await asyncio.gather(*tasks)

    async def _score_one(
        self,
        job: ScanJob,
        company: CompanyProfile,
        program: Program,
        channel: ProgressChannel,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            analysis = await self._engine.score(company, program)
            job.results.append(ScoredProgram(program=program, analysis=analysis))
        except InvalidCredential as exc:
            job.failures.append(ProgramFailure(program.program_name, exc.kind.value, exc.user_message()))
            self._fail(job, channel, exc.user_message(), exc.kind)
        except PipelineError as exc:
            logger.warning("Scoring %r failed (%s): %s", program.program_name, exc.kind.value, exc)
            job.failures.append(ProgramFailure(program.program_name, exc.kind.value, exc.user_message()))
        finally:
            # Increment and emit have no await between them, so counters reach the channel in order.
            job.current += 1
            channel.emit_progress(
                JobStage.scoring.value,
                job.current,
                job.total,
                program.program_name,
                STAGE_PHASES[JobStage.scoring],
            )
            semaphore.release()

    @staticmethod
    def result_payload(job: ScanJob, aggregation: Optional[AggregationResult] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "jobId": job.job_id,
            "status": job.status.value,
            "total": job.total,
            "results": [item.as_dict() for item in job.results],
            "failures": [failure.as_dict() for failure in job.failures],
            "detailFailures": [failure.as_dict() for failure in job.detail_failures],
        }
        if aggregation is not None:
            payload["sourceFailures"] = [failure.as_dict() for failure in aggregation.failures]
            payload["financials"] = [row.as_dict() for row in aggregation.financials]
            if aggregation.company is not None:
                payload["company"] = aggregation.company.as_dict()
        return payload


class JobRegistry:
    """In-flight jobs by id, so they can be inspected or cancelled. Entries leave when the job task ends."""

    def __init__(self) -> None:
        self._jobs: Dict[str, ScanJob] = {}
        self._tasks: Dict[str, "asyncio.Task[ScanJob]"] = {}

    def register(self, job: ScanJob, task: Optional["asyncio.Task[ScanJob]"] = None) -> None:
        self._jobs[job.job_id] = job
        if task is not None:
            self._tasks[job.job_id] = task
            task.add_done_callback(lambda _: self.forget(job.job_id))

    def forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._tasks.pop(job_id, None)

    def get(self, job_id: str) -> Optional[ScanJob]:
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> Optional[ScanJob]:
        job = self._jobs.get(job_id)
        if job is not None and not job.is_terminal:
            job.cancel_requested = True
        return job

    def __len__(self) -> int:
        return len(self._jobs)
