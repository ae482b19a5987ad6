import asyncio
import contextvars
import datetime
import json
import logging
import os
import random
import re
import shutil
import subprocess
import sys
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Protocol, TypeVar
from urllib.parse import quote

import boto3
import httpx
import uvicorn
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, HTTPException, Query, Security
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from starlette.requests import Request
from yt_dlp.utils import sanitize_filename as ytdlp_sanitize_filename

__version__ = "1.0.0"

# ----------------------------
# Logging setup
# ----------------------------

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


# Filter on the handler so httpx/botocore records also carry request_id
_log_handler = logging.StreamHandler(sys.stdout)
_log_handler.addFilter(RequestIdFilter())

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
    handlers=[_log_handler],
)
logger = logging.getLogger("ytdl-store-api")


# ----------------------------
# Configuration
# ----------------------------


def _env_truthy(value: str | None, *, default: bool = False) -> bool:
    """Parse common truthy/falsey strings from environment variables."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(value: str | None, *, default: int) -> int:
    """Parse integer from environment variable with default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(value: str | None, *, default: float) -> float:
    """Parse float from environment variable with default."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_csv(value: str | None) -> list[str]:
    """Split a comma separated environment value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


E = TypeVar("E", bound=Enum)


def _env_choice(value: str | None, enum_cls: type[E], *, default: E) -> E:
    """Parse an enum member by value, falling back to default on unknown input."""
    if value is None:
        return default
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        logger.warning(
            "Unknown value for %s value=%r, using default=%s",
            enum_cls.__name__,
            value,
            default.value,
        )
        return default


class StoreBackend(str, Enum):
    s3 = "s3"  # Direct MinIO/S3 binding through boto3
    http = "http"  # Sibling storage service reached over HTTP


class StoreUnreachablePolicy(str, Enum):
    """What the existence check does when the store cannot be reached."""

    fail = "fail"  # Abort the operation with a StoreFailure
    miss = "miss"  # Treat as a cache miss and run the download


class RetryConfig(BaseModel):
    """Configuration for retry behavior of object store calls."""

    max_retries: int = Field(default=2, ge=0, description="Maximum number of retry attempts")
    backoff_base: float = Field(default=0.5, ge=0, description="Base backoff delay in seconds")
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Exponential backoff multiplier"
    )
    jitter: bool = Field(
        default=True, description="Add random jitter to backoff to avoid thundering herd"
    )
    retryable_http_codes: list[int] = Field(
        default_factory=lambda: [429, 500, 502, 503, 504],
        description="HTTP status codes that trigger retry",
    )

    @classmethod
    def from_env(cls) -> "RetryConfig":
        cfg = cls(
            max_retries=max(0, _env_int(os.getenv("STORE_MAX_RETRIES"), default=2)),
            backoff_base=max(0.0, _env_float(os.getenv("STORE_RETRY_BACKOFF"), default=0.5)),
            backoff_multiplier=max(
                1.0, _env_float(os.getenv("STORE_RETRY_BACKOFF_MULTIPLIER"), default=2.0)
            ),
            jitter=_env_truthy(os.getenv("STORE_RETRY_JITTER"), default=True),
        )
        logger.info(
            "Store retry config loaded max_retries=%s backoff_base=%s backoff_multiplier=%s jitter=%s",
            cfg.max_retries,
            cfg.backoff_base,
            cfg.backoff_multiplier,
            cfg.jitter,
        )
        return cfg


class ServiceConfig(BaseModel):
    """
    Process-wide settings, built once at startup and handed to every collaborator.

    - ytdlp_path / ffmpeg_path: executables, PATH-resolved unless absolute
    - scratch_dir: root for per-request download directories
    - default_bucket: content bucket finished artifacts are stored in
    - command_timeout: optional wall-clock limit for yt-dlp invocations (seconds)
    - store_backend: direct S3 binding or HTTP storage service
    - premium_roles: roles allowed to request premium tiers (empty = any authenticated caller)
    - store_unreachable_policy: fail or miss when the existence check cannot reach the store
    - serialize_same_key: hold a per-key lock around check -> download -> upload
    """

    ytdlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"
    scratch_dir: Path = Path("downloads")
    default_bucket: str = "my-bucket"
    command_timeout: float | None = Field(default=None, gt=0)

    store_backend: StoreBackend = StoreBackend.s3
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    minio_region: str = "us-east-1"
    storage_service_url: str = "http://minioservice:5000"
    http_timeout: float = Field(default=30.0, gt=0)

    auth_service_url: str = "http://authservice:5000/auth/me"
    premium_roles: list[str] = Field(default_factory=list)
    admin_role: str = "Admin"

    store_unreachable_policy: StoreUnreachablePolicy = StoreUnreachablePolicy.fail
    serialize_same_key: bool = True
    store_retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        timeout = _env_float(os.getenv("COMMAND_TIMEOUT"), default=0.0)
        scratch = Path(os.getenv("SCRATCH_DIR", "./downloads").strip() or "./downloads")
        cfg = cls(
            ytdlp_path=os.getenv("YTDLP_PATH", "yt-dlp").strip() or "yt-dlp",
            ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg").strip() or "ffmpeg",
            scratch_dir=scratch.resolve(strict=False),
            default_bucket=os.getenv("DEFAULT_BUCKET", "my-bucket").strip() or "my-bucket",
            command_timeout=timeout if timeout > 0 else None,
            store_backend=_env_choice(
                os.getenv("STORE_BACKEND"), StoreBackend, default=StoreBackend.s3
            ),
            minio_endpoint=os.getenv("MINIO_ENDPOINT", "minio:9000").strip(),
            minio_access_key=os.getenv("MINIO_ACCESS_KEY", "minioadmin"),
            minio_secret_key=os.getenv("MINIO_SECRET_KEY", "minioadmin"),
            minio_secure=_env_truthy(os.getenv("MINIO_SECURE"), default=False),
            minio_region=os.getenv("MINIO_REGION", "us-east-1").strip(),
            storage_service_url=os.getenv(
                "STORAGE_SERVICE_URL", "http://minioservice:5000"
            ).strip(),
            http_timeout=max(1.0, _env_float(os.getenv("HTTP_TIMEOUT"), default=30.0)),
            auth_service_url=os.getenv(
                "AUTH_SERVICE_URL", "http://authservice:5000/auth/me"
            ).strip(),
            premium_roles=_env_csv(os.getenv("PREMIUM_ROLES")),
            admin_role=os.getenv("ADMIN_ROLE", "Admin").strip() or "Admin",
            store_unreachable_policy=_env_choice(
                os.getenv("STORE_UNREACHABLE_POLICY"),
                StoreUnreachablePolicy,
                default=StoreUnreachablePolicy.fail,
            ),
            serialize_same_key=_env_truthy(os.getenv("SERIALIZE_SAME_KEY"), default=True),
            store_retry=RetryConfig.from_env(),
        )
        logger.info(
            "Service config loaded ytdlp_path=%s scratch_dir=%s bucket=%s store_backend=%s "
            "command_timeout=%s unreachable_policy=%s premium_roles=%s",
            cfg.ytdlp_path,
            cfg.scratch_dir,
            cfg.default_bucket,
            cfg.store_backend.value,
            cfg.command_timeout,
            cfg.store_unreachable_policy.value,
            cfg.premium_roles,
        )
        return cfg


# ----------------------------
# Errors
# ----------------------------


class ServiceError(Exception):
    """Base for failures that map onto an outward HTTP status."""

    status_code = 500

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": False, "error": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


class InputError(ServiceError):
    status_code = 400


class MetadataFailure(ServiceError):
    status_code = 502


class DownloadFailureReason(str, Enum):
    failed = "failed"  # yt-dlp exited non-zero
    file_missing = "file_missing"  # exited zero but left no file behind
    timeout = "timeout"  # killed after COMMAND_TIMEOUT


class DownloadFailure(ServiceError):
    status_code = 502

    def __init__(
        self,
        message: str,
        detail: str | None = None,
        reason: DownloadFailureReason = DownloadFailureReason.failed,
    ):
        super().__init__(message, detail)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class StoreFailure(ServiceError):
    status_code = 502


class NotFoundError(ServiceError):
    status_code = 404


class AuthorizationFailure(ServiceError):
    status_code = 401


class ForbiddenError(ServiceError):
    status_code = 403


# ----------------------------
# Retry utilities
# ----------------------------

T = TypeVar("T")


def is_retryable_error(error: Exception, retry_config: RetryConfig) -> bool:
    """Check if an error is retryable based on configuration."""
    error_str = str(error).lower()

    # botocore renders status codes as "(503)", httpx as "'503 service unavailable'"
    for code in retry_config.retryable_http_codes:
        if (
            f"http error {code}" in error_str
            or f"httperror: {code}" in error_str
            or f"({code})" in error_str
            or f"'{code} " in error_str
        ):
            return True

    retryable_patterns = [
        "too many requests",
        "rate limit",
        "slowdown",
        "temporary failure",
        "connection reset",
        "connection refused",
        "could not connect",
        "timed out",
        "timeout",
        "server error",
        "service unavailable",
    ]

    return any(pattern in error_str for pattern in retryable_patterns)


def calculate_backoff(attempt: int, retry_config: RetryConfig) -> float:
    """Calculate exponential backoff delay with optional jitter."""
    delay = retry_config.backoff_base * (retry_config.backoff_multiplier**attempt)

    # +/-25% random variation
    if retry_config.jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


def retry_with_backoff(
    func: Callable[..., T],
    retry_config: RetryConfig,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Execute a function with bounded retries and exponential backoff."""
    for attempt in range(retry_config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            is_last_attempt = attempt >= retry_config.max_retries
            if is_last_attempt or not is_retryable_error(e, retry_config):
                logger.debug(
                    "Giving up attempt=%d/%d error=%s",
                    attempt + 1,
                    retry_config.max_retries + 1,
                    str(e)[:200],
                )
                raise

            backoff = calculate_backoff(attempt, retry_config)
            logger.info(
                "Transient store error, retrying after backoff attempt=%d/%d backoff_seconds=%.2f error=%s",
                attempt + 1,
                retry_config.max_retries + 1,
                backoff,
                str(e)[:200],
            )
            time.sleep(backoff)

    raise RuntimeError("Retry logic failed without raising an exception")


# ----------------------------
# External command runner
# ----------------------------


class CommandResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandTimeout(Exception):
    def __init__(self, executable: str, timeout: float):
        super().__init__(f"{Path(executable).name} did not finish within {timeout:g}s")
        self.executable = executable
        self.timeout = timeout


# Exit code reported when the executable itself could not be started.
COMMAND_NOT_STARTED = 127


class CommandRunner:
    """
    Runs external executables with a literal argument vector.

    Arguments are never joined into a shell command line, so URLs and titles
    containing shell metacharacters reach the child process untouched. Output
    is captured as complete text streams. A non-zero exit code is returned to
    the caller, which decides what it means for its operation.
    """

    def __init__(self, config: ServiceConfig):
        self.config = config

    def run(
        self, executable: str, args: Sequence[str], timeout: float | None = None
    ) -> CommandResult:
        argv = [executable, *args]
        logger.debug("Command start executable=%s argc=%d timeout=%s", executable, len(args), timeout)
        start = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            # subprocess.run has already killed the child at this point
            logger.warning(
                "Command timed out executable=%s timeout=%s", executable, timeout
            )
            raise CommandTimeout(executable, timeout or 0) from exc
        except OSError as exc:
            logger.error("Command failed to start executable=%s error=%s", executable, exc)
            # The OSError text carries the configured path, keep only the program name
            name = Path(executable).name or executable
            return CommandResult(
                exit_code=COMMAND_NOT_STARTED,
                stderr=f"{name}: could not start ({exc.strerror or type(exc).__name__})",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            "Command done executable=%s exit_code=%d elapsed_ms=%d",
            executable,
            completed.returncode,
            elapsed_ms,
        )
        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def ytdlp(self, args: Sequence[str], timeout: float | None = None) -> CommandResult:
        return self.run(self.config.ytdlp_path, args, timeout=timeout)

    def ytdlp_version(self) -> str:
        try:
            result = self.ytdlp(["--version"])
        except Exception:
            logger.exception("Error probing yt-dlp version")
            return "Error"
        if not result.ok or not result.stdout.strip():
            return "Unknown"
        return result.stdout.strip()

    def ffmpeg_version(self) -> str:
        try:
            result = self.run(self.config.ffmpeg_path, ["-version"])
        except Exception:
            logger.exception("Error probing ffmpeg version")
            return "Error"
        if not result.ok or not result.stdout.strip():
            return "Unknown"
        match = re.search(r"ffmpeg version ([\d.]+)", result.stdout)
        return match.group(1) if match else result.stdout.splitlines()[0].strip()


# ----------------------------
# Video metadata
# ----------------------------


class FormatInfo(BaseModel):
    format_id: str | None = None
    format: str | None = None
    ext: str | None = None
    resolution: str | None = None
    filesize: int | None = None
    fps: int | None = None


class VideoFormatOption(BaseModel):
    id: str
    resolution: str
    filesize: int | None = None


class VideoMetadata(BaseModel):
    title: str | None = None
    duration: int | None = None
    channel: str | None = None
    channel_follower_count: int | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    upload_date: datetime.date | None = None
    thumbnail_url: str | None = None
    available_formats: list[FormatInfo] = Field(default_factory=list)
    video_formats: list[VideoFormatOption] = Field(default_factory=list)

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration)


def format_duration(seconds: int | None) -> str:
    """Render seconds as H:MM:SS, or M:SS under an hour."""
    if seconds is None:
        return "-"
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _get_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _get_int(data: dict[str, Any], key: str) -> int | None:
    """Read a number that yt-dlp may emit either as JSON number or numeric string."""
    value = data.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
    except (ValueError, OverflowError):
        return None
    return None


_UPLOAD_DATE_RE = re.compile(r"\d{8}")


def parse_upload_date(value: Any) -> datetime.date | None:
    if not isinstance(value, str) or not _UPLOAD_DATE_RE.fullmatch(value):
        return None
    try:
        return datetime.datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


_RESOLUTION_RE = re.compile(r"\d+x\d+")


def _format_id_number(format_id: str | None) -> int:
    try:
        return int(format_id or "")
    except ValueError:
        return 0


def _resolution_height(resolution: str) -> int:
    parts = resolution.split("x")
    if len(parts) != 2:
        return 0
    try:
        return int(parts[1])
    except ValueError:
        return 0


def reduce_formats(formats: Sequence[FormatInfo]) -> list[VideoFormatOption]:
    """
    Collapse yt-dlp's format list into one mp4 option per resolution.

    Within a resolution the largest file wins, ties going to the numerically
    larger format id (non-numeric ids count as 0). The result is ordered by
    ascending height so it reads as a quality ladder.
    """
    groups: dict[str, list[FormatInfo]] = {}
    for fmt in formats:
        if fmt.ext != "mp4" or not fmt.resolution or fmt.resolution == "audio only":
            continue
        if not _RESOLUTION_RE.fullmatch(fmt.resolution):
            continue
        groups.setdefault(fmt.resolution, []).append(fmt)

    best = [
        max(group, key=lambda f: (f.filesize or 0, _format_id_number(f.format_id)))
        for group in groups.values()
    ]
    best.sort(key=lambda f: _resolution_height(f.resolution or ""))
    return [
        VideoFormatOption(id=f.format_id or "", resolution=f.resolution or "", filesize=f.filesize)
        for f in best
    ]


def parse_video_metadata(data: dict[str, Any]) -> VideoMetadata:
    raw_formats = data.get("formats")
    formats = [
        FormatInfo(
            format_id=_get_str(item, "format_id"),
            format=_get_str(item, "format"),
            ext=_get_str(item, "ext"),
            resolution=_get_str(item, "resolution"),
            filesize=_get_int(item, "filesize"),
            fps=_get_int(item, "fps"),
        )
        for item in (raw_formats if isinstance(raw_formats, list) else [])
        if isinstance(item, dict)
    ]
    return VideoMetadata(
        title=_get_str(data, "title"),
        duration=_get_int(data, "duration"),
        channel=_get_str(data, "channel"),
        channel_follower_count=_get_int(data, "channel_follower_count"),
        view_count=_get_int(data, "view_count"),
        like_count=_get_int(data, "like_count"),
        comment_count=_get_int(data, "comment_count"),
        upload_date=parse_upload_date(data.get("upload_date")),
        thumbnail_url=_get_str(data, "thumbnail"),
        available_formats=formats,
        video_formats=reduce_formats(formats),
    )


class MetadataResolver:
    def __init__(self, runner: CommandRunner, config: ServiceConfig):
        self.runner = runner
        self.config = config

    def resolve(self, url: str) -> VideoMetadata:
        """Dump single-video metadata through yt-dlp and parse it."""
        if not url or not url.strip():
            raise InputError("URL is required")

        logger.info("Resolving metadata url=%s", url)
        start = time.monotonic()
        try:
            result = self.runner.ytdlp(
                ["--dump-json", "--no-playlist", "--", url],
                timeout=self.config.command_timeout,
            )
        except CommandTimeout as exc:
            raise MetadataFailure("Metadata lookup timed out", detail=str(exc)) from exc

        if not result.ok or not result.stdout.strip():
            logger.warning(
                "Metadata lookup failed url=%s exit_code=%d stderr=%s",
                url,
                result.exit_code,
                result.stderr[:200],
            )
            raise MetadataFailure(
                "Failed to resolve video metadata",
                detail=result.stderr.strip() or f"yt-dlp exited with code {result.exit_code}",
            )

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise MetadataFailure("Malformed metadata JSON", detail=str(exc)) from exc
        if not isinstance(data, dict):
            raise MetadataFailure("Malformed metadata JSON", detail="expected a JSON object")

        metadata = parse_video_metadata(data)
        logger.info(
            "Resolved metadata url=%s title=%r formats=%d video_formats=%d elapsed_ms=%d",
            url,
            metadata.title,
            len(metadata.available_formats),
            len(metadata.video_formats),
            int((time.monotonic() - start) * 1000),
        )
        return metadata


# ----------------------------
# Domain models
# ----------------------------


class DownloadRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    format: str | None = None
    extract_audio: bool = False
    audio_format: str | None = None
    audio_quality: str | None = None
    resolution: str | None = Field(default=None, description="Target resolution as 'WxH'")
    merge_audio: bool = True


class CheckFileRequest(BaseModel):
    url: str = ""
    quality_label: str | None = None
    media_type: str | None = Field(default=None, description="'video' or 'audio'")
    file_name: str | None = None


class DownloadOutcome(BaseModel):
    success: bool
    stored_key: str
    download_reference: str
    message: str


class FileCheck(BaseModel):
    exists: bool
    file_name: str | None = None
    download_reference: str | None = None


# ----------------------------
# Authorization gate
# ----------------------------


class QualityTier(str, Enum):
    standard = "standard"
    premium = "premium"


PREMIUM_AUDIO_QUALITIES = frozenset({"192k", "320k"})
FREE_VIDEO_RESOLUTION = "854x480"
FREE_VIDEO_WIDTH_PREFIXES = ("640", "480")


def requires_privilege(request: DownloadRequest) -> bool:
    """Classify a request as premium. Pure: never looks at who is asking."""
    premium_audio = bool(
        request.extract_audio
        and request.audio_quality
        and request.audio_quality.strip().lower() in PREMIUM_AUDIO_QUALITIES
    )

    premium_video = False
    if request.resolution:
        resolution = request.resolution.strip().lower()
        width = resolution.split("x", 1)[0]
        premium_video = resolution != FREE_VIDEO_RESOLUTION and not width.startswith(
            FREE_VIDEO_WIDTH_PREFIXES
        )

    return premium_audio or premium_video


def quality_tier(request: DownloadRequest) -> QualityTier:
    return QualityTier.premium if requires_privilege(request) else QualityTier.standard


# ----------------------------
# Identity
# ----------------------------


class Identity(BaseModel):
    authenticated: bool = False
    subject: str | None = None
    roles: list[str] = Field(default_factory=list)

    def has_any_role(self, roles: Sequence[str]) -> bool:
        wanted = {r.lower() for r in roles}
        return any(r.lower() in wanted for r in self.roles)


def parse_bearer(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityClient:
    """Validates bearer tokens against the auth service's /auth/me endpoint."""

    def __init__(self, config: ServiceConfig, client: httpx.Client | None = None):
        self.config = config
        self.client = client or httpx.Client(timeout=config.http_timeout)

    def validate(self, token: str | None) -> Identity:
        if not token:
            return Identity()

        try:
            response = self.client.get(
                self.config.auth_service_url,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.error("Token validation request failed error=%s", exc)
            return Identity()

        if response.status_code == 401:
            logger.warning("Token rejected by auth service")
            return Identity()
        if not response.is_success:
            logger.warning("Auth service error status=%d", response.status_code)
            return Identity()

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        roles: list[str] = []
        if isinstance(data.get("role"), str):
            roles.append(data["role"])
        if isinstance(data.get("roles"), list):
            roles.extend(r for r in data["roles"] if isinstance(r, str))

        subject = next(
            (str(data[k]) for k in ("id", "userId", "sub", "email", "userName") if data.get(k)),
            None,
        )
        return Identity(authenticated=True, subject=subject, roles=roles)


def authorize_download(
    request: DownloadRequest,
    token: str | None,
    identity_client: IdentityClient,
    config: ServiceConfig,
) -> Identity | None:
    """Reject premium requests that lack a validated identity. Standard requests pass untouched."""
    if not requires_privilege(request):
        return None

    if not token:
        logger.warning("Unauthenticated premium request url=%s", request.url)
        raise AuthorizationFailure("Authentication required for premium quality")

    identity = identity_client.validate(token)
    if not identity.authenticated:
        raise AuthorizationFailure("Authentication required for premium quality")
    if config.premium_roles and not identity.has_any_role(config.premium_roles):
        logger.warning(
            "Premium request without premium role subject=%s roles=%s",
            identity.subject,
            identity.roles,
        )
        raise AuthorizationFailure("This quality requires a premium subscription")

    logger.info("Premium download authorized subject=%s", identity.subject)
    return identity


def require_admin(
    token: str | None, identity_client: IdentityClient, config: ServiceConfig
) -> Identity:
    if not token:
        raise AuthorizationFailure("Unauthorized")
    identity = identity_client.validate(token)
    if not identity.authenticated:
        raise AuthorizationFailure("Unauthorized - Invalid token")
    if not identity.has_any_role([config.admin_role]):
        raise ForbiddenError(f"Forbidden: {config.admin_role} role required")
    return identity


# ----------------------------
# Object store facade
# ----------------------------


class StoreStatus(str, Enum):
    ok = "ok"
    not_found = "not_found"
    error = "error"


class StoreResult(BaseModel):
    """Outcome of a store call: ok with a value, not_found, or error with detail."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: StoreStatus
    value: Any = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == StoreStatus.ok

    @property
    def not_found(self) -> bool:
        return self.status == StoreStatus.not_found

    @classmethod
    def success(cls, value: Any = None) -> "StoreResult":
        return cls(status=StoreStatus.ok, value=value)

    @classmethod
    def missing(cls, detail: str = "Object not found") -> "StoreResult":
        return cls(status=StoreStatus.not_found, detail=detail)

    @classmethod
    def failure(cls, detail: str) -> "StoreResult":
        return cls(status=StoreStatus.error, detail=detail)


class ObjectStat(BaseModel):
    present: bool
    size: int | None = None
    etag: str | None = None
    modified_at: datetime.datetime | None = None


class BucketStats(BaseModel):
    count: int = 0
    total_bytes: int = 0


class ObjectStore(Protocol):
    def exists(self, bucket: str, key: str) -> StoreResult: ...

    def upload(self, bucket: str, key: str, stream: BinaryIO, length: int) -> StoreResult: ...

    def download(self, bucket: str, key: str) -> StoreResult: ...

    def list(self, bucket: str) -> StoreResult: ...

    def delete(self, bucket: str, key: str) -> StoreResult: ...

    def bucket_stats(self, bucket: str) -> StoreResult: ...


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        order += 1
        value /= 1024
    return f"{value:.2f} {units[order]}"


def make_s3_client(config: ServiceConfig) -> Any:
    endpoint = config.minio_endpoint
    if "://" not in endpoint:
        endpoint = f"{'https' if config.minio_secure else 'http'}://{endpoint}"
    return boto3.client(
        "s3",
        aws_access_key_id=config.minio_access_key,
        aws_secret_access_key=config.minio_secret_key,
        region_name=config.minio_region,
        endpoint_url=endpoint,
        config=BotoConfig(s3={"addressing_style": "path"}),
    )


class S3ObjectStore:
    """Direct MinIO/S3 binding through boto3."""

    def __init__(self, config: ServiceConfig, client: Any = None):
        self.config = config
        self.client = client if client is not None else make_s3_client(config)

    def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return retry_with_backoff(func, self.config.store_retry, *args, **kwargs)

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return str(error.get("Code")) in {"404", "NoSuchKey", "NotFound", "NoSuchBucket"} or status == 404

    def exists(self, bucket: str, key: str) -> StoreResult:
        try:
            head = self._call(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError as exc:
            if self._is_missing(exc):
                return StoreResult.success(ObjectStat(present=False))
            logger.error("S3 head_object failed bucket=%s key=%s error=%s", bucket, key, exc)
            return StoreResult.failure(str(exc))
        except BotoCoreError as exc:
            logger.error("S3 unreachable on head_object bucket=%s error=%s", bucket, exc)
            return StoreResult.failure(str(exc))

        etag = head.get("ETag")
        return StoreResult.success(
            ObjectStat(
                present=True,
                size=head.get("ContentLength"),
                etag=etag.strip('"') if isinstance(etag, str) else None,
                modified_at=head.get("LastModified"),
            )
        )

    def upload(self, bucket: str, key: str, stream: BinaryIO, length: int) -> StoreResult:
        def _put() -> None:
            stream.seek(0)
            self.client.upload_fileobj(
                stream, bucket, key, ExtraArgs={"ContentType": "application/octet-stream"}
            )

        try:
            self._call(_put)
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            logger.error("S3 upload failed bucket=%s key=%s error=%s", bucket, key, exc)
            return StoreResult.failure(str(exc))
        logger.info("S3 upload done bucket=%s key=%s size_bytes=%d", bucket, key, length)
        return StoreResult.success()

    def download(self, bucket: str, key: str) -> StoreResult:
        try:
            obj = self._call(self.client.get_object, Bucket=bucket, Key=key)
            body = obj["Body"].read()
        except ClientError as exc:
            if self._is_missing(exc):
                return StoreResult.missing()
            logger.error("S3 get_object failed bucket=%s key=%s error=%s", bucket, key, exc)
            return StoreResult.failure(str(exc))
        except BotoCoreError as exc:
            logger.error("S3 unreachable on get_object bucket=%s error=%s", bucket, exc)
            return StoreResult.failure(str(exc))
        return StoreResult.success(body)

    def _iter_objects(self, bucket: str) -> Iterator[dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            yield from page.get("Contents", [])

    def list(self, bucket: str) -> StoreResult:
        try:
            keys = self._call(lambda: [obj["Key"] for obj in self._iter_objects(bucket)])
        except ClientError as exc:
            if self._is_missing(exc):
                return StoreResult.missing(f"Bucket {bucket} not found")
            return StoreResult.failure(str(exc))
        except BotoCoreError as exc:
            return StoreResult.failure(str(exc))
        return StoreResult.success(keys)

    def delete(self, bucket: str, key: str) -> StoreResult:
        # delete_object succeeds on missing keys, so stat first to report NotFound
        stat = self.exists(bucket, key)
        if not stat.ok:
            return stat
        if not stat.value.present:
            return StoreResult.missing()
        try:
            self._call(self.client.delete_object, Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 delete failed bucket=%s key=%s error=%s", bucket, key, exc)
            return StoreResult.failure(str(exc))
        logger.info("S3 object deleted bucket=%s key=%s", bucket, key)
        return StoreResult.success()

    def bucket_stats(self, bucket: str) -> StoreResult:
        def _collect() -> BucketStats:
            stats = BucketStats()
            for obj in self._iter_objects(bucket):
                stats.count += 1
                stats.total_bytes += int(obj.get("Size") or 0)
            return stats

        try:
            stats = self._call(_collect)
        except ClientError as exc:
            if self._is_missing(exc):
                return StoreResult.missing(f"Bucket {bucket} not found")
            return StoreResult.failure(str(exc))
        except BotoCoreError as exc:
            return StoreResult.failure(str(exc))
        return StoreResult.success(stats)


class HttpObjectStore:
    """Object store reached through the sibling storage service's HTTP API."""

    def __init__(self, config: ServiceConfig, client: httpx.Client | None = None):
        self.config = config
        self.client = client or httpx.Client(
            base_url=config.storage_service_url, timeout=config.http_timeout
        )

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        before: Callable[[], None] | None = kwargs.pop("before", None)

        def _attempt() -> httpx.Response:
            if before is not None:
                before()
            response = self.client.request(method, path, **kwargs)
            if response.status_code == 429 or response.status_code >= 500:
                response.raise_for_status()
            return response

        return retry_with_backoff(_attempt, self.config.store_retry)

    @staticmethod
    def _path(*segments: str) -> str:
        return "/" + "/".join(quote(s, safe="") for s in segments)

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {response.status_code}"

    @staticmethod
    def _json_body(response: httpx.Response, expected: type) -> Any:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, expected):
            logger.error(
                "Storage service sent an unexpected body status=%d content_type=%s",
                response.status_code,
                response.headers.get("content-type", "-"),
            )
            return None
        return data

    def exists(self, bucket: str, key: str) -> StoreResult:
        try:
            response = self._send(
                "POST", "/check-exists", json={"bucket": bucket, "objectName": key}
            )
        except httpx.HTTPError as exc:
            logger.error("Storage service unreachable on check-exists error=%s", exc)
            return StoreResult.failure(str(exc))
        if not response.is_success:
            return StoreResult.failure(self._error_text(response))

        data = self._json_body(response, dict)
        if data is None:
            return StoreResult.failure("Malformed check-exists response")
        if not data.get("exists"):
            return StoreResult.success(ObjectStat(present=False))
        try:
            stat = ObjectStat(
                present=True,
                size=data.get("size"),
                etag=data.get("etag"),
                modified_at=data.get("lastModified"),
            )
        except ValueError:
            return StoreResult.failure("Malformed check-exists response")
        return StoreResult.success(stat)

    def upload(self, bucket: str, key: str, stream: BinaryIO, length: int) -> StoreResult:
        try:
            response = self._send(
                "POST",
                self._path("upload", bucket, key),
                files={"file": (key, stream, "application/octet-stream")},
                before=lambda: stream.seek(0),
            )
        except httpx.HTTPError as exc:
            logger.error("Storage service upload failed key=%s error=%s", key, exc)
            return StoreResult.failure(str(exc))
        if not response.is_success:
            return StoreResult.failure(f"Upload failed: {self._error_text(response)}")
        logger.info("Storage service upload done bucket=%s key=%s size_bytes=%d", bucket, key, length)
        return StoreResult.success()

    def download(self, bucket: str, key: str) -> StoreResult:
        try:
            response = self._send("GET", self._path("download", bucket, key))
        except httpx.HTTPError as exc:
            return StoreResult.failure(str(exc))
        if response.status_code == 404:
            return StoreResult.missing()
        if not response.is_success:
            return StoreResult.failure(self._error_text(response))
        return StoreResult.success(response.content)

    def list(self, bucket: str) -> StoreResult:
        try:
            response = self._send("GET", self._path("list", bucket))
        except httpx.HTTPError as exc:
            return StoreResult.failure(str(exc))
        if response.status_code == 404:
            return StoreResult.missing(f"Bucket {bucket} not found")
        if not response.is_success:
            return StoreResult.failure(self._error_text(response))
        data = self._json_body(response, list)
        if data is None:
            return StoreResult.failure("Malformed list response")
        return StoreResult.success([str(k) for k in data])

    def delete(self, bucket: str, key: str) -> StoreResult:
        try:
            response = self._send("DELETE", self._path("delete", bucket, key))
        except httpx.HTTPError as exc:
            return StoreResult.failure(str(exc))
        if response.status_code == 404:
            return StoreResult.missing()
        if not response.is_success:
            return StoreResult.failure(self._error_text(response))
        return StoreResult.success()

    def bucket_stats(self, bucket: str) -> StoreResult:
        try:
            response = self._send("GET", "/stats", params={"bucket": bucket})
        except httpx.HTTPError as exc:
            return StoreResult.failure(str(exc))
        if not response.is_success:
            return StoreResult.failure(self._error_text(response))
        data = self._json_body(response, dict)
        if data is None:
            return StoreResult.failure("Malformed stats response")
        try:
            stats = BucketStats(
                count=int(data.get("totalFiles") or 0),
                total_bytes=int(data.get("totalSize") or 0),
            )
        except (TypeError, ValueError):
            return StoreResult.failure("Malformed stats response")
        return StoreResult.success(stats)


def build_object_store(config: ServiceConfig) -> ObjectStore:
    if config.store_backend == StoreBackend.http:
        logger.info("Using HTTP object store url=%s", config.storage_service_url)
        return HttpObjectStore(config)
    logger.info("Using S3 object store endpoint=%s", config.minio_endpoint)
    return S3ObjectStore(config)


# ----------------------------
# Download orchestration
# ----------------------------

DEFAULT_AUDIO_QUALITY_LABEL = "192k"
MESSAGE_FILE_EXISTS = "File already exists"
MESSAGE_FILE_READY = "File ready"

# Extension yt-dlp gives the extracted file for codecs whose name differs from it.
_AUDIO_CODEC_EXTENSIONS = {"aac": "m4a", "alac": "m4a", "vorbis": "ogg"}


def sanitize_filename(name: str) -> str:
    """Drop every non-ASCII character. Lossy, deterministic and idempotent."""
    return "".join(ch for ch in name if ord(ch) < 128)


def title_file_stem(title: str) -> str:
    """
    Stem yt-dlp gives a file written through a "%(title)s" template.

    yt-dlp swaps reserved characters such as ":" and "|" for full-width
    lookalikes, which sanitize_filename later drops.
    """
    return ytdlp_sanitize_filename(title)


def quality_label(request: DownloadRequest) -> str:
    if request.extract_audio:
        return request.audio_quality or DEFAULT_AUDIO_QUALITY_LABEL
    if request.resolution:
        return request.resolution
    return request.format or "unknown"


def expected_extension(request: DownloadRequest) -> str:
    if not request.extract_audio:
        return ".mp4"
    codec = (request.audio_format or "mp3").strip().lower()
    if not codec.isalnum() or codec == "best":
        return ".mp3"
    return "." + _AUDIO_CODEC_EXTENSIONS.get(codec, codec)


def stored_key_for(file_name: str, label: str) -> str:
    """Insert ' [label]' before the extension of a produced file and sanitize."""
    path = Path(file_name)
    return sanitize_filename(f"{path.stem} [{label}]{path.suffix}")


def download_reference(bucket: str, key: str) -> str:
    return f"{bucket}/{quote(key, safe='')}"


def build_download_args(request: DownloadRequest, output_dir: Path) -> list[str]:
    """
    Build the yt-dlp argument vector for a download.

    The URL goes last, after "--", so a value starting with "-" can never be
    read as an option.
    """
    args = ["-o", str(output_dir / "%(title)s.%(ext)s"), "--no-playlist"]

    if request.extract_audio:
        # A format ending in "k" is a bitrate sent in the wrong field, not a format id
        if request.format and not request.format.lower().endswith("k"):
            source = request.format
        else:
            source = "bestaudio"
        args += [
            "-f",
            source,
            "-x",
            "--audio-format",
            request.audio_format or "mp3",
            "--audio-quality",
            request.audio_quality or "0",
        ]
    else:
        fmt = request.format or "bestvideo+bestaudio"
        if (
            request.merge_audio
            and request.format
            and "+" not in request.format
            and "bestaudio" not in request.format
        ):
            fmt = f"{request.format}+bestaudio"
        args += ["-f", fmt, "--merge-output-format", "mp4"]

    args += ["--", request.url]
    return args


def locate_artifact(output_dir: Path) -> Path | None:
    """Most recently modified file in the per-request directory."""
    if not output_dir.is_dir():
        return None
    files = [p for p in output_dir.iterdir() if p.is_file()]
    if not files:
        return None
    return max(files, key=lambda p: p.stat().st_mtime)


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """Per-key mutual exclusion; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, _KeyLock())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class DownloadOrchestrator:
    """
    Download a video or its audio with yt-dlp and park the result in the object store.

    Per call: metadata lookup -> existence check -> (hit: done) or
    (miss: download -> re-check -> upload) with the per-request scratch
    directory removed on every exit path. A request whose artifact is already
    stored never runs the external download.
    """

    def __init__(
        self,
        runner: CommandRunner,
        resolver: MetadataResolver,
        store: ObjectStore,
        config: ServiceConfig,
    ):
        self.runner = runner
        self.resolver = resolver
        self.store = store
        self.config = config
        self._locks = KeyedLocks()

    def download_and_upload(
        self, request: DownloadRequest, bucket: str | None = None
    ) -> DownloadOutcome:
        bucket = bucket or self.config.default_bucket
        if not request.url or not request.url.strip():
            raise InputError("URL is required")

        label = quality_label(request)
        metadata = self.resolver.resolve(request.url)
        if not metadata.title:
            raise MetadataFailure("Video metadata has no title")

        expected_key = stored_key_for(
            title_file_stem(metadata.title) + expected_extension(request), label
        )
        logger.info(
            "Download-upload start url=%s bucket=%s label=%s expected_key=%r tier=%s",
            request.url,
            bucket,
            label,
            expected_key,
            quality_tier(request).value,
        )

        if not self.config.serialize_same_key:
            return self._fetch_and_store(request, bucket, label, expected_key)
        with self._locks.hold(f"{bucket}/{expected_key}"):
            return self._fetch_and_store(request, bucket, label, expected_key)

    def _fetch_and_store(
        self, request: DownloadRequest, bucket: str, label: str, expected_key: str
    ) -> DownloadOutcome:
        if self._is_stored(bucket, expected_key):
            logger.info("Cache hit bucket=%s key=%r", bucket, expected_key)
            return self._outcome(bucket, expected_key, MESSAGE_FILE_EXISTS)

        workdir = self._new_workdir()
        start = time.monotonic()
        try:
            artifact = self._execute(request, workdir)
            stored_key = stored_key_for(artifact.name, label)

            # The produced name can differ from the predicted one, check again right before upload
            if self._is_stored(bucket, stored_key):
                logger.info("Artifact already stored, discarding local copy key=%r", stored_key)
                return self._outcome(bucket, stored_key, MESSAGE_FILE_EXISTS)

            self._upload(bucket, stored_key, artifact)
            logger.info(
                "Download-upload done bucket=%s key=%r elapsed_ms=%d",
                bucket,
                stored_key,
                int((time.monotonic() - start) * 1000),
            )
            return self._outcome(bucket, stored_key, MESSAGE_FILE_READY)
        finally:
            self._cleanup(workdir)

    def _is_stored(self, bucket: str, key: str) -> bool:
        result = self.store.exists(bucket, key)
        if result.ok:
            return bool(result.value.present)
        if result.not_found:
            return False
        if self.config.store_unreachable_policy == StoreUnreachablePolicy.miss:
            logger.warning(
                "Existence check failed, treating as miss bucket=%s key=%r error=%s",
                bucket,
                key,
                result.detail,
            )
            return False
        raise StoreFailure("Object store existence check failed", detail=result.detail)

    def _new_workdir(self) -> Path:
        workdir = self.config.scratch_dir / uuid.uuid4().hex
        workdir.mkdir(parents=True, exist_ok=False)
        return workdir

    def _execute(self, request: DownloadRequest, workdir: Path) -> Path:
        args = build_download_args(request, workdir)
        try:
            result = self.runner.ytdlp(args, timeout=self.config.command_timeout)
        except CommandTimeout as exc:
            raise DownloadFailure(
                "Download timed out", detail=str(exc), reason=DownloadFailureReason.timeout
            ) from exc

        if not result.ok:
            logger.error(
                "Download failed url=%s exit_code=%d stderr=%s",
                request.url,
                result.exit_code,
                result.stderr[:500],
            )
            raise DownloadFailure(
                "Download failed",
                detail=self._scrub(result.stderr.strip()) or None,
                reason=DownloadFailureReason.failed,
            )

        artifact = locate_artifact(workdir)
        if artifact is None:
            logger.error("Download succeeded but file not found url=%s", request.url)
            raise DownloadFailure(
                "Download succeeded but file not found",
                detail="File not found after download",
                reason=DownloadFailureReason.file_missing,
            )
        return artifact

    def _upload(self, bucket: str, key: str, artifact: Path) -> None:
        size = artifact.stat().st_size
        with artifact.open("rb") as fh:
            result = self.store.upload(bucket, key, fh, size)
        if not result.ok:
            raise StoreFailure("Upload failed", detail=result.detail)

    def _cleanup(self, workdir: Path) -> None:
        try:
            shutil.rmtree(workdir)
            logger.debug("Removed scratch dir path=%s", workdir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove scratch dir path=%s error=%s", workdir, exc)

    def _scrub(self, text: str) -> str:
        """Remove local scratch paths from tool diagnostics before they leave the service."""
        root = str(self.config.scratch_dir)
        return text.replace(root, "<scratch>") if root else text

    def _outcome(self, bucket: str, key: str, message: str) -> DownloadOutcome:
        return DownloadOutcome(
            success=True,
            stored_key=key,
            download_reference=download_reference(bucket, key),
            message=message,
        )

    def check_file(self, request: CheckFileRequest, bucket: str | None = None) -> FileCheck:
        """Look for a stored artifact whose name (minus extension) matches, ignoring case."""
        bucket = bucket or self.config.default_bucket
        if request.file_name:
            search_name = request.file_name
        else:
            if not request.url or not request.url.strip():
                raise InputError("URL or file_name is required")
            try:
                metadata = self.resolver.resolve(request.url)
            except MetadataFailure as exc:
                logger.warning("Check-file metadata lookup failed url=%s error=%s", request.url, exc.detail)
                return FileCheck(exists=False)
            if not metadata.title:
                return FileCheck(exists=False)
            extension = ".mp4" if request.media_type == "video" else ".mp3"
            stem = title_file_stem(metadata.title)
            if request.quality_label:
                search_name = f"{stem} [{request.quality_label}]{extension}"
            else:
                search_name = f"{stem}{extension}"

        wanted = sanitize_filename(Path(search_name).stem).lower()
        listing = self.store.list(bucket)
        if not listing.ok:
            logger.warning("Check-file listing failed bucket=%s error=%s", bucket, listing.detail)
            return FileCheck(exists=False)

        match = next((key for key in listing.value if Path(key).stem.lower() == wanted), None)
        if match is None:
            return FileCheck(exists=False)
        return FileCheck(
            exists=True, file_name=match, download_reference=download_reference(bucket, match)
        )


# ----------------------------
# Service wiring
# ----------------------------


class Services:
    """Collaborators built once from the startup config."""

    def __init__(
        self,
        config: ServiceConfig,
        runner: CommandRunner,
        resolver: MetadataResolver,
        store: ObjectStore,
        identity: IdentityClient,
        orchestrator: DownloadOrchestrator,
    ):
        self.config = config
        self.runner = runner
        self.resolver = resolver
        self.store = store
        self.identity = identity
        self.orchestrator = orchestrator


def build_services(config: ServiceConfig, store: ObjectStore | None = None) -> Services:
    runner = CommandRunner(config)
    resolver = MetadataResolver(runner, config)
    store = store if store is not None else build_object_store(config)
    return Services(
        config=config,
        runner=runner,
        resolver=resolver,
        store=store,
        identity=IdentityClient(config),
        orchestrator=DownloadOrchestrator(runner, resolver, store, config),
    )


config = ServiceConfig.from_env()
services = build_services(config)


# ----------------------------
# Async execution
# ----------------------------

# Reuse one executor rather than creating a new pool per call.
_EXECUTOR = ThreadPoolExecutor(
    max_workers=int(os.getenv("MAX_WORKERS", "4")), thread_name_prefix="ytdl-worker"
)


async def run_in_threadpool(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return await loop.run_in_executor(_EXECUTOR, lambda: ctx.run(func, *args, **kwargs))


# ----------------------------
# FastAPI
# ----------------------------

bearer_scheme = HTTPBearer(auto_error=False)

app = FastAPI(
    title="ytdl store API",
    description="Download media with yt-dlp and serve it from MinIO-compatible object storage",
    version=__version__,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    token = _request_id_ctx.set(request_id)
    start = time.monotonic()
    try:
        logger.info("Request start method=%s path=%s", request.method, request.url.path)
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Request end method=%s path=%s status=%d elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        _request_id_ctx.reset(token)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(
            "Request failed path=%s error=%s detail=%s",
            request.url.path,
            exc.message,
            (exc.detail or "")[:200],
        )
    else:
        logger.info("Request rejected path=%s status=%d error=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _token(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    return credentials.credentials if credentials else None


def _download_url(reference: str | None) -> str | None:
    return f"/download-from-store/{reference}" if reference else None


@app.get("/", response_class=JSONResponse)
async def root():
    return {"service": "ytdl-store-api", "version": __version__, "status": "running"}


@app.get("/api/health", response_class=JSONResponse)
async def health():
    return {"status": "healthy", "timestamp": datetime.datetime.now().isoformat()}


@app.get("/info", response_class=JSONResponse)
async def api_get_video_info(url: str = Query("", description="Video URL")):
    if not url.strip():
        raise InputError("URL parameter is required")
    metadata = await run_in_threadpool(services.resolver.resolve, url)
    data = metadata.model_dump(mode="json")
    data["duration_text"] = metadata.duration_text
    return {"status": "success", "data": data}


@app.post("/check-file", response_class=JSONResponse)
async def api_check_file(request: CheckFileRequest):
    result = await run_in_threadpool(services.orchestrator.check_file, request)
    data = result.model_dump()
    data["download_url"] = _download_url(result.download_reference)
    return data


@app.post("/download-and-upload", response_class=JSONResponse)
async def api_download_and_upload(
    request: DownloadRequest,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
):
    if not request.url.strip():
        raise InputError("URL is required")

    await run_in_threadpool(
        authorize_download, request, _token(credentials), services.identity, services.config
    )

    try:
        outcome = await run_in_threadpool(services.orchestrator.download_and_upload, request)
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("Download-upload crashed url=%s", request.url)
        raise HTTPException(status_code=500, detail="Download-and-upload failed") from exc

    return {
        "success": outcome.success,
        "file_name": outcome.stored_key,
        "download_reference": outcome.download_reference,
        "download_url": _download_url(outcome.download_reference),
        "message": outcome.message,
    }


@app.get("/download-from-store/{bucket}/{object_name:path}")
async def api_download_from_store(bucket: str, object_name: str):
    if not bucket.strip() or not object_name.strip():
        raise InputError("Invalid parameters")

    result = await run_in_threadpool(services.store.download, bucket, object_name)
    if result.not_found:
        raise NotFoundError("File not found")
    if not result.ok:
        raise StoreFailure("Object store download failed", detail=result.detail)

    filename = sanitize_filename(Path(object_name).name).replace('"', "")
    logger.info("Serving stored object bucket=%s key=%r size_bytes=%d", bucket, object_name, len(result.value))
    return Response(
        content=result.value,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/list/{bucket}", response_class=JSONResponse)
async def api_list_bucket(bucket: str):
    result = await run_in_threadpool(services.store.list, bucket)
    if result.not_found:
        raise NotFoundError(f"Bucket {bucket} not found")
    if not result.ok:
        raise StoreFailure("Object store listing failed", detail=result.detail)
    return {"status": "success", "data": result.value}


@app.delete("/delete/{bucket}/{object_name:path}", response_class=JSONResponse)
async def api_delete_object(
    bucket: str,
    object_name: str,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
):
    await run_in_threadpool(require_admin, _token(credentials), services.identity, services.config)

    result = await run_in_threadpool(services.store.delete, bucket, object_name)
    if result.not_found:
        raise NotFoundError("File not found")
    if not result.ok:
        raise StoreFailure("Object store delete failed", detail=result.detail)
    logger.info("Deleted stored object bucket=%s key=%r", bucket, object_name)
    return {"success": True, "message": "File deleted successfully"}


@app.get("/stats", response_class=JSONResponse)
async def api_bucket_stats(
    bucket: str | None = Query(None, description="Bucket name, defaults to the content bucket"),
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
):
    await run_in_threadpool(require_admin, _token(credentials), services.identity, services.config)

    bucket = bucket or services.config.default_bucket
    result = await run_in_threadpool(services.store.bucket_stats, bucket)
    if result.not_found:
        raise NotFoundError(f"Bucket {bucket} not found")
    if not result.ok:
        raise StoreFailure("Object store stats failed", detail=result.detail)

    stats: BucketStats = result.value
    return {
        "status": "success",
        "data": {
            "bucket": bucket,
            "total_files": stats.count,
            "total_size": stats.total_bytes,
            "total_size_formatted": format_bytes(stats.total_bytes),
            "timestamp": datetime.datetime.now().isoformat(),
        },
    }


@app.get("/system/versions", response_class=JSONResponse)
async def api_versions():
    ytdlp_version = await run_in_threadpool(services.runner.ytdlp_version)
    ffmpeg_version = await run_in_threadpool(services.runner.ffmpeg_version)
    return {
        "ytdlp": ytdlp_version,
        "ffmpeg": ffmpeg_version,
        "service": "ytdl-store-api",
        "timestamp": datetime.datetime.now().isoformat(),
    }


def start_api() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting uvicorn host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logger.info("Starting ytdl store API server...")
    start_api()
