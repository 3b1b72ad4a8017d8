"""
Data model for Aurora server.

Dataclasses for the persisted entities plus explicit patch types that
enumerate the mutable fields of each entity.
"""

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError
from .utils import to_iso

RUN_STATUSES = ("running", "completed", "failed", "cancelled")
TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")
RESULT_STATES = ("passed", "failed", "skipped", "pending", "retried")
TERMINAL_RESULT_STATES = ("passed", "failed", "skipped")


class _Unset:
    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


def _dumps(value):
    return json.dumps(value) if value is not None else None


def _loads(value, default=None):
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


# --- Value objects ---

@dataclass
class TestError:  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    """Structured error attached to a failed TestResult."""
    name: Optional[str] = None
    message: Optional[str] = None
    stack: Optional[str] = None
    diff: Optional[str] = None

    def to_dict(self):
        return {"name": self.name, "message": self.message, "stack": self.stack, "diff": self.diff}

    @classmethod
    def from_dict(cls, data):
        if data is None or isinstance(data, cls):
            return data
        if isinstance(data, str):
            return cls(name="Error", message=data)
        if not isinstance(data, dict):
            raise ValidationError("error must be an object")
        diff = data.get("diff")
        if diff is not None and not isinstance(diff, str):
            diff = json.dumps(diff)
        return cls(
            name=data.get("name"),
            message=data.get("message"),
            stack=data.get("stack"),
            diff=diff,
        )


@dataclass
class BrowserInfo:
    name: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self):
        return {"name": self.name, "version": self.version}


@dataclass
class Viewport:
    width: int
    height: int

    def to_dict(self):
        return {"width": self.width, "height": self.height}


@dataclass
class CIInfo:
    """Continuous-integration provenance of a run."""
    provider: str
    branch: Optional[str] = None
    commit: Optional[str] = None
    build_number: Optional[str] = None
    build_url: Optional[str] = None
    is_pr: bool = False
    pr_number: Optional[str] = None

    def to_dict(self):
        return {
            "provider": self.provider,
            "branch": self.branch,
            "commit": self.commit,
            "buildNumber": self.build_number,
            "buildUrl": self.build_url,
            "isPR": self.is_pr,
            "prNumber": self.pr_number,
        }

    @classmethod
    def from_dict(cls, data):
        if data is None or isinstance(data, cls):
            return data
        if not isinstance(data, dict) or not data.get("provider"):
            raise ValidationError("ciInfo must be an object with a provider")
        return cls(
            provider=data["provider"],
            branch=data.get("branch"),
            commit=data.get("commit"),
            build_number=data.get("buildNumber", data.get("build_number")),
            build_url=data.get("buildUrl", data.get("build_url")),
            is_pr=bool(data.get("isPR", data.get("is_pr", False))),
            pr_number=data.get("prNumber", data.get("pr_number")),
        )


# --- Entities ---

@dataclass
class TestRun:  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    """Represents one execution of a test suite."""
    id: str
    start_time: str
    status: str = "running"
    end_time: Optional[str] = None
    duration: Optional[int] = None
    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    retries: int = 0
    browser_name: Optional[str] = None
    browser_version: Optional[str] = None
    runner_version: Optional[str] = None
    spec_files: List[str] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    ci_info: Optional[CIInfo] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self):
        return self.status in TERMINAL_RUN_STATUSES

    def to_row(self):
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "total_tests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
            "retries": self.retries,
            "browser_name": self.browser_name,
            "browser_version": self.browser_version,
            "runner_version": self.runner_version,
            "spec_files": _dumps(self.spec_files or []),
            "config": _dumps(self.config or {}),
            "ci_info": _dumps(self.ci_info.to_dict()) if self.ci_info else None,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row):
        ci = _loads(row.get("ci_info"))
        return cls(
            id=row["id"],
            start_time=row["start_time"],
            status=row["status"],
            end_time=row.get("end_time"),
            duration=row.get("duration"),
            total_tests=row.get("total_tests") or 0,
            passed=row.get("passed") or 0,
            failed=row.get("failed") or 0,
            skipped=row.get("skipped") or 0,
            pending=row.get("pending") or 0,
            retries=row.get("retries") or 0,
            browser_name=row.get("browser_name"),
            browser_version=row.get("browser_version"),
            runner_version=row.get("runner_version"),
            spec_files=_loads(row.get("spec_files"), []),
            config=_loads(row.get("config"), {}),
            ci_info=CIInfo.from_dict(ci) if ci else None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "totalTests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
            "retries": self.retries,
            "browser": {"name": self.browser_name, "version": self.browser_version},
            "runnerVersion": self.runner_version,
            "specFiles": list(self.spec_files),
            "config": self.config,
            "ciInfo": self.ci_info.to_dict() if self.ci_info else None,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class TestResult:  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    """Represents the outcome of one test case within a run."""
    id: str
    run_id: str
    title: str
    full_title: str
    state: str = "pending"
    duration: int = 0
    error: Optional[TestError] = None
    screenshot_path: Optional[str] = None
    retries: int = 0
    current_retry: int = 0
    pending: bool = False
    file: Optional[str] = None
    parent: Optional[str] = None
    context: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    browser: Optional[BrowserInfo] = None
    viewport: Optional[Viewport] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self):
        return self.state in TERMINAL_RESULT_STATES

    def to_row(self):
        error = self.error or TestError()
        return {
            "id": self.id,
            "run_id": self.run_id,
            "title": self.title,
            "full_title": self.full_title,
            "state": self.state,
            "duration": self.duration,
            "error_name": error.name,
            "error_message": error.message,
            "error_stack": error.stack,
            "error_diff": error.diff,
            "screenshot_path": self.screenshot_path,
            "retries": self.retries,
            "current_retry": self.current_retry,
            "pending": 1 if self.pending else 0,
            "file": self.file,
            "parent": self.parent,
            "context": self.context,
            "tags": _dumps(self.tags) if self.tags else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "browser_name": self.browser.name if self.browser else None,
            "browser_version": self.browser.version if self.browser else None,
            "viewport_width": self.viewport.width if self.viewport else None,
            "viewport_height": self.viewport.height if self.viewport else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row):
        error = None
        if any(row.get(k) is not None for k in ("error_name", "error_message", "error_stack", "error_diff")):
            error = TestError(
                name=row.get("error_name"),
                message=row.get("error_message"),
                stack=row.get("error_stack"),
                diff=row.get("error_diff"),
            )
        browser = None
        if row.get("browser_name") is not None or row.get("browser_version") is not None:
            browser = BrowserInfo(row.get("browser_name"), row.get("browser_version"))
        viewport = None
        if row.get("viewport_width") is not None and row.get("viewport_height") is not None:
            viewport = Viewport(row["viewport_width"], row["viewport_height"])
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            title=row["title"],
            full_title=row["full_title"],
            state=row["state"],
            duration=row.get("duration") or 0,
            error=error,
            screenshot_path=row.get("screenshot_path"),
            retries=row.get("retries") or 0,
            current_retry=row.get("current_retry") or 0,
            pending=bool(row.get("pending")),
            file=row.get("file"),
            parent=row.get("parent"),
            context=row.get("context"),
            tags=_loads(row.get("tags"), []),
            start_time=row.get("start_time"),
            end_time=row.get("end_time"),
            browser=browser,
            viewport=viewport,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "runId": self.run_id,
            "title": self.title,
            "fullTitle": self.full_title,
            "state": self.state,
            "duration": self.duration,
            "error": self.error.to_dict() if self.error else None,
            "screenshotPath": self.screenshot_path,
            "retries": self.retries,
            "currentRetry": self.current_retry,
            "pending": self.pending,
            "file": self.file,
            "parent": self.parent,
            "context": self.context,
            "tags": list(self.tags),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "browser": self.browser.to_dict() if self.browser else None,
            "viewport": self.viewport.to_dict() if self.viewport else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Screenshot:
    id: str
    test_result_id: str
    name: str
    path: str
    thumbnail_path: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None
    format: Optional[str] = None
    taken_at: Optional[str] = None
    created_at: Optional[str] = None

    def to_row(self):
        return {
            "id": self.id,
            "test_result_id": self.test_result_id,
            "name": self.name,
            "path": self.path,
            "thumbnail_path": self.thumbnail_path,
            "width": self.width,
            "height": self.height,
            "size": self.size,
            "format": self.format,
            "taken_at": self.taken_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row):
        return cls(**{f.name: row.get(f.name) for f in fields(cls)})

    def to_dict(self):
        return {
            "id": self.id,
            "testResultId": self.test_result_id,
            "name": self.name,
            "path": self.path,
            "thumbnailPath": self.thumbnail_path,
            "width": self.width,
            "height": self.height,
            "size": self.size,
            "format": self.format,
            "takenAt": self.taken_at,
            "createdAt": self.created_at,
        }


@dataclass
class FilterPreset:
    """A named, saved set of dashboard filter criteria."""
    id: str
    name: str
    filters: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    is_default: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_row(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "filters": _dumps(self.filters or {}),
            "is_default": 1 if self.is_default else 0,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            name=row["name"],
            filters=_loads(row.get("filters"), {}),
            description=row.get("description"),
            is_default=bool(row.get("is_default")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "filters": self.filters,
            "isDefault": self.is_default,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class FlakyTest:
    full_title: str
    file: Optional[str]
    total_runs: int
    failures: int
    failure_rate: float
    last_failure: Optional[str] = None

    def to_dict(self):
        return {
            "fullTitle": self.full_title,
            "file": self.file,
            "totalRuns": self.total_runs,
            "failures": self.failures,
            "failureRate": self.failure_rate,
            "lastFailure": self.last_failure,
        }


# --- Patch types ---

def _non_negative_int(name):
    def convert(value):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0 or int(value) != value:
            raise ValidationError(f"{name} must be a non-negative integer")
        return int(value)
    return convert


def _optional_non_negative_int(name):
    convert_int = _non_negative_int(name)

    def convert(value):
        return None if value is None else convert_int(value)
    return convert


def _one_of(name, allowed):
    def convert(value):
        if value not in allowed:
            raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
        return value
    return convert


def _optional_text(name):
    def convert(value):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        return value
    return convert


def _required_text(name):
    def convert(value):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} must be a non-empty string")
        return value
    return convert


def _string_list(name):
    def convert(value):
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise ValidationError(f"{name} must be a list of strings")
        return json.dumps(list(value))
    return convert


def _json_object(name):
    def convert(value):
        if not isinstance(value, dict):
            raise ValidationError(f"{name} must be an object")
        return json.dumps(value)
    return convert


def _timestamp(value):
    return to_iso(value)


def _ci_info(value):
    info = CIInfo.from_dict(value)
    return json.dumps(info.to_dict()) if info else None


def _bool_flag(name):
    def convert(value):
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be a boolean")
        return 1 if value else 0
    return convert


class _Patch:
    """Shared behaviour of the explicit patch types.

    Subclasses declare their mutable fields as dataclass fields defaulting to
    UNSET and provide CONVERTERS (field -> column conversion) and ALIASES
    (camelCase payload key -> field).
    """

    CONVERTERS = {}
    ALIASES = {}
    # Fields only the ingestion gateway may write.
    LIFECYCLE = frozenset()

    def changes(self) -> List[Tuple[str, Any]]:
        """Return validated (column, value) pairs for every supplied field."""
        result = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is UNSET:
                continue
            column, convert = self.CONVERTERS[f.name]
            result.append((column, convert(value)))
        return result

    def is_empty(self):
        return all(getattr(self, f.name) is UNSET for f in fields(self))

    def lifecycle_fields(self) -> List[str]:
        return [f.name for f in fields(self) if f.name in self.LIFECYCLE and getattr(self, f.name) is not UNSET]

    @classmethod
    def metadata_from_dict(cls, payload):
        """Build a patch from an API body, refusing lifecycle fields."""
        patch = cls.from_dict(payload)
        managed = patch.lifecycle_fields()
        if managed:
            raise ValidationError(f"Field is managed by ingestion and cannot be updated: {', '.join(managed)}")
        return patch

    @classmethod
    def from_dict(cls, payload):
        if not isinstance(payload, dict):
            raise ValidationError("Patch body must be an object")
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in payload.items():
            name = cls.ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Field cannot be updated: {key}")
            kwargs[name] = value
        return cls(**kwargs)


@dataclass
class TestRunPatch(_Patch):  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    end_time: Any = UNSET
    duration: Any = UNSET
    total_tests: Any = UNSET
    passed: Any = UNSET
    failed: Any = UNSET
    skipped: Any = UNSET
    pending: Any = UNSET
    retries: Any = UNSET
    status: Any = UNSET
    browser_name: Any = UNSET
    browser_version: Any = UNSET
    runner_version: Any = UNSET
    spec_files: Any = UNSET
    config: Any = UNSET
    ci_info: Any = UNSET

    CONVERTERS = {
        "end_time": ("end_time", _timestamp),
        "duration": ("duration", _optional_non_negative_int("duration")),
        "total_tests": ("total_tests", _non_negative_int("totalTests")),
        "passed": ("passed", _non_negative_int("passed")),
        "failed": ("failed", _non_negative_int("failed")),
        "skipped": ("skipped", _non_negative_int("skipped")),
        "pending": ("pending", _non_negative_int("pending")),
        "retries": ("retries", _non_negative_int("retries")),
        "status": ("status", _one_of("status", RUN_STATUSES)),
        "browser_name": ("browser_name", _optional_text("browserName")),
        "browser_version": ("browser_version", _optional_text("browserVersion")),
        "runner_version": ("runner_version", _optional_text("runnerVersion")),
        "spec_files": ("spec_files", _string_list("specFiles")),
        "config": ("config", _json_object("config")),
        "ci_info": ("ci_info", _ci_info),
    }
    LIFECYCLE = frozenset({
        "end_time", "duration", "total_tests", "passed", "failed",
        "skipped", "pending", "retries", "status",
    })
    ALIASES = {
        "endTime": "end_time",
        "totalTests": "total_tests",
        "browserName": "browser_name",
        "browserVersion": "browser_version",
        "runnerVersion": "runner_version",
        "specFiles": "spec_files",
        "ciInfo": "ci_info",
    }


def _error_columns(value):
    error = TestError.from_dict(value) or TestError()
    return error


@dataclass
class TestResultPatch(_Patch):  # pytest: disable=collection
    __test__ = False  # Tell pytest to ignore this class
    state: Any = UNSET
    duration: Any = UNSET
    error: Any = UNSET
    screenshot_path: Any = UNSET
    retries: Any = UNSET
    current_retry: Any = UNSET
    end_time: Any = UNSET
    context: Any = UNSET
    tags: Any = UNSET

    CONVERTERS = {
        "state": ("state", _one_of("state", RESULT_STATES)),
        "duration": ("duration", _non_negative_int("duration")),
        "screenshot_path": ("screenshot_path", _optional_text("screenshotPath")),
        "retries": ("retries", _non_negative_int("retries")),
        "current_retry": ("current_retry", _non_negative_int("currentRetry")),
        "end_time": ("end_time", _timestamp),
        "context": ("context", _optional_text("context")),
        "tags": ("tags", _string_list("tags")),
    }
    LIFECYCLE = frozenset({"state", "duration", "retries", "current_retry", "end_time"})
    ALIASES = {
        "screenshotPath": "screenshot_path",
        "currentRetry": "current_retry",
        "endTime": "end_time",
    }

    def changes(self):
        # The structured error spans four columns.
        result = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is UNSET:
                continue
            if f.name == "error":
                error = _error_columns(value)
                result.extend([
                    ("error_name", error.name),
                    ("error_message", error.message),
                    ("error_stack", error.stack),
                    ("error_diff", error.diff),
                ])
                continue
            column, convert = self.CONVERTERS[f.name]
            result.append((column, convert(value)))
        if self.state is not UNSET:
            result.append(("pending", 1 if self.state == "pending" else 0))
        return result


@dataclass
class FilterPresetPatch(_Patch):
    name: Any = UNSET
    description: Any = UNSET
    filters: Any = UNSET
    is_default: Any = UNSET

    CONVERTERS = {
        "name": ("name", _required_text("name")),
        "description": ("description", _optional_text("description")),
        "filters": ("filters", _json_object("filters")),
        "is_default": ("is_default", _bool_flag("isDefault")),
    }
    ALIASES = {"isDefault": "is_default"}
