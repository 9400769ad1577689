import asyncio
from dataclasses import replace

from conftest import build_settings
from grantscan.models.company import CompanyProfile
from grantscan.models.fit import Eligibility, EligibilityDetails, FitAnalysisResult, FitDimensions
from grantscan.models.job import JobStatus, ProgramFailure, ScanJob
from grantscan.models.program import Program
from grantscan.services.aggregator import AggregationResult, SourceFailure, SourceSelection
from grantscan.services.progress import ProgressChannel
from grantscan.services.resilience import InvalidCredential, UpstreamError, ValidationError
from grantscan.services.scan_runner import JobRegistry, ScanRunner

COMPANY = CompanyProfile(name="그린테크", address="서울특별시 강남구")
SELECTION = SourceSelection(sources=["odcloud", "kstartup"])


def _analysis(score=70):
    return FitAnalysisResult(
        fit_score=score,
        eligibility=Eligibility.eligible,
        dimensions=FitDimensions(score, score, score, score, score),
        eligibility_details=EligibilityDetails(),
        strengths=[],
        weaknesses=[],
        advice="",
        recommended_strategy="",
        key_actions=[],
    )


class _FakeAggregator:
    def __init__(self, programs=(), failures=(), listing_sources=("odcloud", "kstartup"), error=None):
        self._result = AggregationResult(
            programs=list(programs),
            failures=list(failures),
            listing_sources=list(listing_sources),
        )
        self._error = error

    async def aggregate(self, company, selection):
        if self._error is not None:
            raise self._error
        self._result.company = company
        return self._result


class _FakeEngine:
    def __init__(self, outcomes=None, delay=0.0, hook=None):
        self._outcomes = outcomes or {}
        self._delay = delay
        self._hook = hook
        self.in_flight = 0
        self.peak = 0
        self.scored = []

    async def score(self, company, program):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self._hook is not None:
                self._hook(program)
            await asyncio.sleep(self._delay)
            self.scored.append(program.program_name)
            outcome = self._outcomes.get(program.program_name, _analysis())
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


def _programs(count):
    return [Program(program_name=f"사업 {index}") for index in range(count)]


def _run(aggregator, engine, job=None, channel=None, enricher=None, **settings):
    runner = ScanRunner(build_settings(**settings), aggregator, engine, enricher)
    job = job or ScanJob()

    async def main():
        chan = channel or ProgressChannel()
        finished = await runner.run(job, COMPANY, SELECTION, chan)
        chan.close()
        events = [event async for event in chan.events()]
        return finished, chan, events

    return asyncio.run(main())


def test_progress_is_monotonic_and_ends_at_total():
    job, channel, events = _run(_FakeAggregator(_programs(5)), _FakeEngine(delay=0.001), scoring_concurrency=3)

    assert job.status == JobStatus.completed
    progress = [event.data for event in events if event.event == "progress"]
    currents = [data["current"] for data in progress]
    assert currents == sorted(currents)
    assert progress[-1]["current"] == progress[-1]["total"] == 5
    assert progress[-1]["percent"] == 100
    assert [data["stage"] for data in progress][0] == "fetching programs"
    assert events[-1].event == "complete"
    assert len(events[-1].data["results"]) == 5
    assert [event.event for event in events].count("complete") == 1


def test_failed_program_is_recorded_and_job_completes():
    engine = _FakeEngine({"사업 1": UpstreamError("backend still down after retries")})
    job, channel, events = _run(_FakeAggregator(_programs(3)), engine)

    assert job.status == JobStatus.completed
    assert len(job.results) == 2
    assert [(f.program_name, f.kind) for f in job.failures] == [("사업 1", "upstream")]
    payload = channel.terminal_data
    assert payload["failures"][0]["programName"] == "사업 1"
    assert payload["total"] == 3


def test_invalid_credential_fails_the_job():
    engine = _FakeEngine({"사업 0": InvalidCredential("API key not valid")})
    job, channel, events = _run(_FakeAggregator(_programs(3)), engine, scoring_concurrency=1)

    assert job.status == JobStatus.failed
    assert job.error_kind == "auth"
    assert channel.terminal == "error"
    assert [event.event for event in events].count("error") == 1
    assert "complete" not in [event.event for event in events]
    assert engine.scored == ["사업 0"]


def test_all_sources_failing_fails_the_job():
    failures = [SourceFailure("odcloud", "auth", "x"), SourceFailure("kstartup", "upstream", "y")]
    job, channel, events = _run(_FakeAggregator(failures=failures), _FakeEngine())

    assert job.status == JobStatus.failed
    assert "No program source could be reached" in job.error_message
    assert events[-1].event == "error"


def test_partial_source_failure_still_scores_the_rest():
    failures = [SourceFailure("odcloud", "auth", "missing key")]
    job, channel, events = _run(_FakeAggregator(_programs(2), failures=failures), _FakeEngine())

    assert job.status == JobStatus.completed
    assert channel.terminal_data["sourceFailures"] == [{"source": "odcloud", "kind": "auth", "message": "missing key"}]


def test_invalid_selection_fails_with_validation_kind():
    job, channel, events = _run(_FakeAggregator(error=ValidationError("Unknown source(s): nope")), _FakeEngine())
    assert job.status == JobStatus.failed
    assert job.error_kind == "validation"


def test_disconnect_cancels_without_terminal_event():
    channel_box = {}

    def hook(program):
        if program.program_name == "사업 1":
            channel_box["channel"].disconnect()

    channel = ProgressChannel()
    channel_box["channel"] = channel
    engine = _FakeEngine(hook=hook)
    job, channel, events = _run(_FakeAggregator(_programs(5)), engine, channel=channel, scoring_concurrency=1)

    assert job.status == JobStatus.cancelled
    assert channel.terminal is None
    assert engine.scored == ["사업 0", "사업 1"]
    assert all(event.event == "progress" for event in events)


def test_cancel_request_stops_dispatch():
    job = ScanJob()

    def hook(program):
        job.cancel_requested = True

    engine = _FakeEngine(hook=hook)
    finished, channel, events = _run(_FakeAggregator(_programs(4)), engine, job=job, scoring_concurrency=1)

    assert finished.status == JobStatus.cancelled
    assert engine.scored == ["사업 0"]
    assert channel.terminal is None


def test_scoring_concurrency_is_bounded():
    engine = _FakeEngine(delay=0.01)
    job, _, _ = _run(_FakeAggregator(_programs(8)), engine, scoring_concurrency=2)

    assert job.status == JobStatus.completed
    assert engine.peak == 2


def test_registry_cancel_and_forget():
    registry = JobRegistry()
    job = ScanJob()
    registry.register(job)
    assert registry.get(job.job_id) is job
    assert registry.cancel(job.job_id).cancel_requested
    assert registry.cancel("missing") is None

    async def main():
        other = ScanJob()
        task = asyncio.create_task(asyncio.sleep(0, result=other))
        registry.register(other, task)
        await task
        await asyncio.sleep(0)
        return other

    other = asyncio.run(main())
    assert registry.get(other.job_id) is None
    assert len(registry) == 1


class _FakeEnricher:
    def __init__(self, error=None, failed=()):
        self._error = error
        self._failed = set(failed)

    async def enrich_all(self, programs, should_stop=None):
        if self._error is not None:
            raise self._error
        enriched, failures = [], []
        for program in programs:
            if program.program_name in self._failed:
                failures.append(ProgramFailure(program.program_name, "upstream", "Detail page returned HTTP 503"))
                enriched.append(program)
            else:
                enriched.append(replace(program, eligibility_criteria=["중소기업"]))
        return enriched, failures


def test_detail_enrichment_runs_before_scoring():
    seen = {}

    def hook(program):
        seen[program.program_name] = program.eligibility_criteria

    enricher = _FakeEnricher(failed=["사업 1"])
    job, channel, events = _run(_FakeAggregator(_programs(3)), _FakeEngine(hook=hook), enricher=enricher)

    assert job.status == JobStatus.completed
    assert seen == {"사업 0": ["중소기업"], "사업 1": None, "사업 2": ["중소기업"]}
    assert len(job.results) == 3
    assert job.failures == []
    assert channel.terminal_data["detailFailures"] == [
        {"programName": "사업 1", "kind": "upstream", "message": "Detail page returned HTTP 503"}
    ]
    assert job.snapshot()["detailFailed"] == 1


def test_rejected_reasoning_key_during_enrichment_fails_the_job():
    engine = _FakeEngine()
    enricher = _FakeEnricher(error=InvalidCredential("API key not valid"))
    job, channel, events = _run(_FakeAggregator(_programs(2)), engine, enricher=enricher)

    assert job.status == JobStatus.failed
    assert job.error_kind == "auth"
    assert engine.scored == []
    assert events[-1].event == "error"
