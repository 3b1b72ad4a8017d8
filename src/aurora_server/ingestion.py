"""
Ingestion gateway for Aurora server.

Translates test-runner lifecycle events into stored runs and results, then
asks the real-time hub to broadcast each mutation. Run-scoped calls take an
explicit RunContext returned by run_start(); there is no global current run.

Persistence failures propagate to the caller. Broadcast failures are logged
and never undo a write.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .errors import ChannelError, NotFoundError, ValidationError
from .models import (
    BrowserInfo,
    CIInfo,
    RESULT_STATES,
    Screenshot,
    TestError,
    TestResult,
    TestResultPatch,
    TestRun,
    TestRunPatch,
    Viewport,
)
from .utils import duration_ms, generate_id, log_event, now_utc_iso, to_epoch_ms, to_iso

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Handle for one in-flight run, threaded through every run-scoped call."""
    run_id: str
    started_at: str
    browser_name: Optional[str] = None
    browser_version: Optional[str] = None
    spec_files: List[str] = field(default_factory=list)
    # Live reporter bookkeeping: test key -> result id.
    live_results: Dict[str, str] = field(default_factory=dict)

    @property
    def browser(self):
        if self.browser_name is None and self.browser_version is None:
            return None
        return BrowserInfo(self.browser_name, self.browser_version)


class ReporterCapability(Protocol):
    """Lifecycle hooks a reporter can implement; invoked by the gateway."""

    async def on_run_start(self, ctx: RunContext, run: TestRun): ...

    async def on_run_end(self, ctx: RunContext, run: TestRun): ...

    async def on_test_start(self, ctx: RunContext, result: TestResult): ...

    async def on_test_end(self, ctx: RunContext, result: TestResult): ...

    async def on_test_retry(self, ctx: RunContext, result: TestResult): ...


class ScreenshotProcessor(Protocol):
    """External collaborator that compresses a captured screenshot.

    Returns a dict with any of path, thumbnailPath, size, width, height that
    changed, or None.
    """

    async def process(self, path: str, quality: int, image_format: str) -> Optional[Dict[str, Any]]: ...


class LoggingReporter:
    """Reporter that writes run progress to the log."""

    async def on_run_start(self, ctx, run):
        logger.info(f"Run {run.id} started with {len(run.spec_files)} spec file(s)")

    async def on_run_end(self, ctx, run):
        logger.info(f"Run {run.id} {run.status}: {run.passed}/{run.total_tests} passed, {run.failed} failed")

    async def on_test_start(self, ctx, result):
        logger.debug(f"[{ctx.run_id}] started: {result.full_title}")

    async def on_test_end(self, ctx, result):
        logger.info(f"[{ctx.run_id}] {result.state}: {result.full_title} ({result.duration}ms)")

    async def on_test_retry(self, ctx, result):
        logger.info(f"[{ctx.run_id}] retry {result.current_retry}: {result.full_title}")


def detect_ci_info(environ=None) -> Optional[CIInfo]:
    """Recognise GitHub Actions, Jenkins and GitLab CI from the environment."""
    env = os.environ if environ is None else environ

    if env.get("GITHUB_ACTIONS"):
        is_pr = env.get("GITHUB_EVENT_NAME") == "pull_request"
        ref_name = env.get("GITHUB_REF_NAME") or ""
        return CIInfo(
            provider="github-actions",
            branch=env.get("GITHUB_HEAD_REF") or ref_name or None,
            commit=env.get("GITHUB_SHA"),
            build_number=env.get("GITHUB_RUN_NUMBER"),
            build_url=(
                f"{env.get('GITHUB_SERVER_URL', 'https://github.com')}/"
                f"{env.get('GITHUB_REPOSITORY')}/actions/runs/{env.get('GITHUB_RUN_ID')}"
            ),
            is_pr=is_pr,
            pr_number=ref_name.split("/")[0] if is_pr and ref_name else None,
        )

    if env.get("JENKINS_URL"):
        return CIInfo(
            provider="jenkins",
            branch=env.get("GIT_BRANCH"),
            commit=env.get("GIT_COMMIT"),
            build_number=env.get("BUILD_NUMBER"),
            build_url=env.get("BUILD_URL"),
            is_pr=bool(env.get("CHANGE_ID")),
            pr_number=env.get("CHANGE_ID"),
        )

    if env.get("GITLAB_CI"):
        mr = env.get("CI_MERGE_REQUEST_IID")
        return CIInfo(
            provider="gitlab-ci",
            branch=env.get("CI_COMMIT_REF_NAME"),
            commit=env.get("CI_COMMIT_SHA"),
            build_number=env.get("CI_PIPELINE_ID"),
            build_url=env.get("CI_PIPELINE_URL"),
            is_pr=bool(mr),
            pr_number=mr,
        )

    return None


# --- Payload mapping ---

def _spec_name(spec) -> str:
    if isinstance(spec, str):
        return spec
    if isinstance(spec, dict):
        name = spec.get("relative") or spec.get("name") or spec.get("absolute")
        if name:
            return name
    raise ValidationError("spec must be a path string or an object with 'relative'")


def _titles(test) -> tuple:
    title = test.get("title")
    if isinstance(title, (list, tuple)):
        parts = [str(p) for p in title if p]
        if not parts:
            raise ValidationError("test title must not be empty")
        return parts[-1], test.get("fullTitle") or " ".join(parts)
    if not isinstance(title, str) or not title:
        raise ValidationError("test title is required")
    return title, test.get("fullTitle") or title


def _parent(test):
    parent = test.get("parent")
    if isinstance(parent, dict):
        return parent.get("title") or None
    return parent or None


def _context(test):
    context = test.get("context")
    if context is None or isinstance(context, str):
        return context
    return json.dumps(context)


def _tags(test) -> List[str]:
    tags = test.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list")
    return [str(t) for t in tags]


def _duration(test) -> int:
    for key in ("duration", "wallClockDuration"):
        value = test.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0, int(value))
    attempts = test.get("attempts") or []
    return sum(int(a.get("duration") or a.get("wallClockDuration") or 0) for a in attempts if isinstance(a, dict))


def _error(test):
    err = test.get("err") or test.get("error") or test.get("displayError")
    if not err:
        return None
    error = TestError.from_dict(err)
    if error.name is None:
        error.name = "Error"
    return error


def _count(summary, key, default):
    value = summary.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{key} must be a non-negative integer")
    return value


def _state(test):
    value = test.get("state") or ("pending" if test.get("pending") else None)
    if value not in RESULT_STATES:
        raise ValidationError(f"Invalid test state: {value!r}")
    return value


class IngestionGateway:
    """Writes lifecycle events through the store, then broadcasts them."""

    def __init__(self, database, hub=None, config: Optional[dict] = None,
                 screenshot_processor: Optional[ScreenshotProcessor] = None,
                 scheduler=None, reporters=None):
        self.database = database
        self.hub = hub
        self.screenshots_config = (config or {}).get("screenshots", {
            "enabled": True, "quality": 90, "format": "png", "on_failure_only": True, "compress": True,
        })
        self.screenshot_processor = screenshot_processor
        self.scheduler = scheduler
        self.reporters = list(reporters) if reporters is not None else [LoggingReporter()]

    # --- Fan-out helpers ---

    def _notify(self, emitter: str, *args):
        if self.hub is None:
            return
        try:
            getattr(self.hub, emitter)(*args)
        except ChannelError as e:
            logger.warning(f"Broadcast {emitter} failed: {e.message}")

    async def _dispatch(self, hook: str, ctx: RunContext, entity):
        for reporter in self.reporters:
            # Reporters are third-party code; the write has already happened.
            try:
                await getattr(reporter, hook)(ctx, entity)
            except Exception as e:
                logger.error(f"Reporter {type(reporter).__name__}.{hook} failed: {e}", exc_info=True)

    # --- Run lifecycle ---

    async def run_start(self, details: Dict[str, Any]) -> RunContext:
        """Create a running TestRun and return its context."""
        if not isinstance(details, dict):
            raise ValidationError("run details must be an object")

        run_id = details.get("runId") or generate_id("run")
        if await self.database.runs.find_by_id(run_id) is not None:
            raise ValidationError(f"Test run {run_id} already exists")

        browser = details.get("browser") or {}
        specs = [_spec_name(spec) for spec in details.get("specs") or []]
        ci_info = details.get("ciInfo")
        run = TestRun(
            id=run_id,
            start_time=to_iso(details.get("startTime")) or now_utc_iso(),
            status="running",
            browser_name=browser.get("name") or details.get("browserName"),
            browser_version=browser.get("version") or details.get("browserVersion"),
            runner_version=details.get("runnerVersion") or details.get("cypressVersion"),
            spec_files=specs,
            config=details.get("config") or {},
            ci_info=CIInfo.from_dict(ci_info) if ci_info else detect_ci_info(),
        )
        await self.database.runs.create(run)

        ctx = RunContext(
            run_id=run.id,
            started_at=run.start_time,
            browser_name=run.browser_name,
            browser_version=run.browser_version,
            spec_files=specs,
        )
        log_event("run_started", run_id=run.id, specs=len(specs), browser=run.browser_name)
        self._notify("run_started", run)
        await self._dispatch("on_run_start", ctx, run)
        return ctx

    async def resume(self, run_id: str) -> RunContext:
        """Rebuild the context of a stored run, e.g. after a runner reconnects.

        Live test bookkeeping is not restored; later test events must carry
        the resultId returned by test-start.
        """
        run = await self.database.runs.get(run_id)
        return RunContext(
            run_id=run.id,
            started_at=run.start_time,
            browser_name=run.browser_name,
            browser_version=run.browser_version,
            spec_files=list(run.spec_files),
        )

    async def spec_before(self, ctx: RunContext, spec):
        logger.debug(f"[{ctx.run_id}] starting spec: {_spec_name(spec)}")

    async def spec_after(self, ctx: RunContext, spec, results) -> List[TestResult]:
        """Store one TestResult per reported test case of a finished spec."""
        file = _spec_name(spec)
        if isinstance(results, dict) and isinstance(results.get("results"), dict):
            results = results["results"]
        if isinstance(results, dict):
            tests = results.get("tests") or []
            spec_config = results.get("config") or {}
        elif isinstance(results, list):
            tests, spec_config = results, {}
        else:
            raise ValidationError("spec results must be an object with 'tests' or a list")

        viewport = None
        if spec_config.get("viewportWidth") and spec_config.get("viewportHeight"):
            viewport = Viewport(int(spec_config["viewportWidth"]), int(spec_config["viewportHeight"]))

        built = [self._build_result(ctx, test, file, viewport) for test in tests]

        created = []
        async with self.database.transaction():
            await self.database.runs.get(ctx.run_id)
            for result in built:
                duplicate = await self.database.results.exists_for_run(
                    ctx.run_id, result.full_title, result.file, result.start_time
                )
                if duplicate:
                    logger.info(f"[{ctx.run_id}] skipping duplicate result for {result.full_title}")
                    continue
                created.append(await self.database.results.create(result))

        logger.debug(f"[{ctx.run_id}] stored {len(created)} of {len(built)} test(s) from {file}")
        for result in created:
            self._notify("test_completed", result)
        return created

    def _build_result(self, ctx: RunContext, test, file, viewport) -> TestResult:
        if not isinstance(test, dict):
            raise ValidationError("each test must be an object")
        title, full_title = _titles(test)
        duration = _duration(test)
        start_time = to_iso(test.get("wallClockStartedAt") or test.get("startTime"))
        end_time = to_iso(test.get("endTime"))
        if end_time is None and start_time is not None:
            end_time = to_iso(to_epoch_ms(start_time) + duration)
        attempts = test.get("attempts") or []
        current_retry = int(test.get("currentRetry") or max(len(attempts) - 1, 0))
        return TestResult(
            id=generate_id("result"),
            run_id=ctx.run_id,
            title=title,
            full_title=full_title,
            state=_state(test),
            duration=duration,
            error=_error(test),
            screenshot_path=test.get("screenshotPath"),
            retries=int(test.get("retries") or current_retry),
            current_retry=current_retry,
            file=test.get("file") or file,
            parent=_parent(test),
            context=_context(test),
            tags=_tags(test),
            start_time=start_time,
            end_time=end_time,
            browser=ctx.browser,
            viewport=viewport,
        )

    async def save_test_result(self, ctx: RunContext, test: Dict[str, Any]) -> TestResult:
        """Store a single result reported outside of a spec batch."""
        result = self._build_result(ctx, test, test.get("file"), None)
        await self.database.results.create(result)
        self._notify("test_completed", result)
        return result

    async def run_end(self, ctx: RunContext, summary: Optional[Dict[str, Any]] = None) -> TestRun:
        """Finalise aggregates and status. A repeated run-end returns the stored run."""
        summary = summary or {}
        run = await self.database.runs.get(ctx.run_id)
        if run.is_terminal:
            logger.warning(f"Ignoring duplicate run-end for {run.id} (already {run.status})")
            return run

        states = await self.database.results.count_states(run.id)
        stats = await self.database.results.get_statistics(run.id)
        passed = _count(summary, "totalPassed", states.get("passed", 0))
        failed = _count(summary, "totalFailed", states.get("failed", 0))
        skipped = _count(summary, "totalSkipped", states.get("skipped", 0))
        pending = _count(summary, "totalPending", states.get("pending", 0))
        total = _count(summary, "totalTests", sum(states.values()))

        if summary.get("status") == "cancelled" or summary.get("cancelled"):
            status = "cancelled"
        elif failed > 0:
            status = "failed"
        else:
            status = "completed"

        end_time = to_iso(summary.get("endTime")) or now_utc_iso()
        duration = summary.get("totalDuration")
        if duration is None:
            duration = duration_ms(run.start_time, end_time)

        run = await self.database.runs.update(run.id, TestRunPatch(
            end_time=end_time,
            duration=duration,
            total_tests=total,
            passed=passed,
            failed=failed,
            skipped=skipped,
            pending=pending,
            retries=_count(summary, "totalRetries", stats["retried"]),
            status=status,
        ))
        log_event("run_finished", run_id=run.id, status=run.status, total=run.total_tests,
                  passed=run.passed, failed=run.failed, duration=run.duration)

        self._notify("run_completed", run)
        if self.hub is not None:
            statistics = await self.hub.statistics_snapshot()
            if statistics is not None:
                self._notify("statistics_updated", statistics)
        await self._dispatch("on_run_end", ctx, run)

        if self.scheduler is not None:
            await self.scheduler.run_retention_cleanup()
        return run

    # --- Live per-test events ---

    def _test_key(self, test) -> str:
        key = test.get("id") or test.get("fullTitle")
        if not key:
            key = _titles(test)[1]
        return str(key)

    async def _live_result(self, ctx: RunContext, test) -> TestResult:
        result_id = test.get("resultId") or ctx.live_results.get(self._test_key(test))
        if not result_id:
            raise NotFoundError("Live test", self._test_key(test))
        return await self.database.results.get(result_id)

    async def test_start(self, ctx: RunContext, test: Dict[str, Any]) -> TestResult:
        """Create a pending result, or reopen a result that is being retried."""
        key = self._test_key(test)
        existing_id = ctx.live_results.get(key)
        if existing_id:
            existing = await self.database.results.find_by_id(existing_id)
            if existing is not None and existing.state == "retried":
                result = await self.database.results.update(existing.id, TestResultPatch(state="pending"))
                self._notify("test_started", result)
                await self._dispatch("on_test_start", ctx, result)
                return result

        title, full_title = _titles(test)
        result = await self.database.results.create(TestResult(
            id=generate_id("result"),
            run_id=ctx.run_id,
            title=title,
            full_title=full_title,
            state="pending",
            file=test.get("file"),
            parent=_parent(test),
            context=_context(test),
            tags=_tags(test),
            start_time=to_iso(test.get("startTime")) or now_utc_iso(),
            browser=ctx.browser,
        ))
        ctx.live_results[key] = result.id
        self._notify("test_started", result)
        await self._dispatch("on_test_start", ctx, result)
        return result

    async def test_end(self, ctx: RunContext, test: Dict[str, Any]) -> TestResult:
        """Move a live result to its terminal state. Repeats are ignored."""
        result = await self._live_result(ctx, test)
        if result.is_terminal:
            logger.info(f"Ignoring duplicate test-end for {result.full_title}")
            return result

        state = test.get("state")
        if state == "pending" or test.get("pending"):
            state = "skipped"
        if state not in ("passed", "failed", "skipped"):
            raise ValidationError(f"Invalid terminal test state: {state!r}")

        end_time = to_iso(test.get("endTime")) or now_utc_iso()
        duration = test.get("duration")
        if duration is None:
            duration = duration_ms(result.start_time, end_time) or 0
        patch = TestResultPatch(state=state, duration=duration, end_time=end_time)
        error = _error(test)
        if error is not None:
            patch.error = error
        result = await self.database.results.update(result.id, patch)
        self._notify("test_completed", result)
        await self._dispatch("on_test_end", ctx, result)
        return result

    async def test_retry(self, ctx: RunContext, test: Dict[str, Any]) -> TestResult:
        """Record a failed attempt that will be retried."""
        result = await self._live_result(ctx, test)
        if result.is_terminal:
            raise ValidationError(f"Test {result.full_title} already finished as {result.state}")
        patch = TestResultPatch(
            state="retried",
            retries=result.retries + 1,
            current_retry=result.current_retry + 1,
        )
        error = _error(test)
        if error is not None:
            patch.error = error
        result = await self.database.results.update(result.id, patch)
        self._notify("test_updated", result, "retried")
        await self._dispatch("on_test_retry", ctx, result)
        return result

    # Capability-style aliases used by runner adapters.
    on_run_start = run_start
    on_run_end = run_end
    on_test_start = test_start
    on_test_end = test_end
    on_test_retry = test_retry

    # --- Metadata and screenshots ---

    async def update_test_metadata(self, result_id: str, updates: Dict[str, Any]) -> TestResult:
        """Patch a stored result (context, tags, error details...)."""
        result = await self.database.results.update(result_id, TestResultPatch.metadata_from_dict(updates))
        self._notify("test_updated", result)
        return result

    async def screenshot_captured(self, ctx: RunContext, details: Dict[str, Any]) -> Optional[Screenshot]:
        """Attach a captured screenshot to its test result."""
        settings = self.screenshots_config
        if not settings.get("enabled", True):
            return None
        path = details.get("path")
        if not isinstance(path, str) or not path:
            raise ValidationError("screenshot path is required")

        if details.get("testResultId"):
            result = await self.database.results.get(details["testResultId"])
        else:
            title = details.get("testTitle") or details.get("title")
            if isinstance(title, list):
                title = " ".join(str(p) for p in title)
            if not title:
                raise ValidationError("testResultId or testTitle is required")
            result = await self.database.results.find_by_title(ctx.run_id, title)
            if result is None:
                raise NotFoundError("Test result", title)

        failed = bool(details.get("testFailure")) or result.state == "failed"
        if settings.get("on_failure_only", True) and not failed:
            logger.debug(f"Skipping screenshot for passing test {result.full_title}")
            return None

        info = {}
        if settings.get("compress", True) and self.screenshot_processor is not None:
            try:
                info = await self.screenshot_processor.process(
                    path, settings.get("quality", 90), settings.get("format", "png")
                ) or {}
            except (OSError, ValueError) as e:
                logger.error(f"Screenshot compression failed for {path}: {e}")

        screenshot = await self.database.screenshots.create(Screenshot(
            id=generate_id("shot"),
            test_result_id=result.id,
            name=details.get("name") or os.path.basename(path),
            path=info.get("path") or path,
            thumbnail_path=info.get("thumbnailPath"),
            width=info.get("width") or (details.get("dimensions") or {}).get("width") or details.get("width"),
            height=info.get("height") or (details.get("dimensions") or {}).get("height") or details.get("height"),
            size=info.get("size") or details.get("size"),
            format=settings.get("format") if info else details.get("format"),
            taken_at=to_iso(details.get("takenAt")) or now_utc_iso(),
        ))
        if result.screenshot_path is None:
            result = await self.database.results.update(
                result.id, TestResultPatch(screenshot_path=screenshot.path)
            )
        self._notify("screenshot_taken", result, screenshot)
        return screenshot

