from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import quote, unquote, urljoin, urlsplit
import asyncio
import logging
import re
import time

import aiohttp
import cssbeautifier
import jsbeautifier
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = "output"
DEFAULT_USER_AGENT = "page-mirror/1.0"
INDENT_SIZE = 2

UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f<>:"/\\|?*]')


class MirrorError(Exception):
    """Base class for every error raised by the mirror."""


class FetchError(MirrorError):
    def __init__(self, url: str, cause: Union[BaseException, str]):
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to fetch {url}: {cause}")


class RootFetchError(FetchError):
    """The entry page could not be retrieved; the whole job is aborted."""


class ResourceFetchError(FetchError):
    """A single asset could not be retrieved; siblings carry on."""


class WriteError(MirrorError):
    def __init__(self, path: Path, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write {path}: {cause}")


class FormatError(MirrorError):
    """Raised by the formatters and always recovered from locally."""


class FetchMode(Enum):
    TEXT = "text"
    BINARY = "binary"


class ReferenceKind(Enum):
    STYLESHEET = ("stylesheet", "css", "style.css", FetchMode.TEXT)
    SCRIPT = ("script", "js", "script.js", FetchMode.TEXT)
    IMAGE = ("image", "images", "image.png", FetchMode.BINARY)
    VIDEO = ("video", "videos", "video.mp4", FetchMode.BINARY)

    def __init__(self, label: str, directory: str, default_name: str, mode: FetchMode):
        self.label = label
        self.directory = directory
        self.default_name = default_name
        self.mode = mode


# Tag name -> (kind, attribute). <source> only counts inside <video>.
TAG_ATTRIBUTES = {
    "link": (ReferenceKind.STYLESHEET, "href"),
    "script": (ReferenceKind.SCRIPT, "src"),
    "img": (ReferenceKind.IMAGE, "src"),
    "video": (ReferenceKind.VIDEO, "src"),
    "source": (ReferenceKind.VIDEO, "src"),
}
REFERENCE_SELECTOR = 'link[rel~="stylesheet" i], script[src], img, video, video source'


class JobStatus(Enum):
    CREATED = "created"
    FETCHING_ROOT = "fetching_root"
    EXTRACTING = "extracting"
    DOWNLOADING = "downloading"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class MirrorConfig:
    max_concurrency: int = 8  # 0 disables the ceiling
    timeout: float = 60
    connect_timeout: float = 10
    user_agent: str = DEFAULT_USER_AGENT
    format_assets: bool = True


@dataclass
class MirrorJob:
    source_url: str
    output_root: Path
    status: JobStatus = JobStatus.CREATED
    error: Optional[str] = None
    start_time: Optional[float] = None
    finished_time: Optional[float] = None

    def to_dict(self) -> Dict:
        end = self.finished_time or time.time()
        return {
            "source_url": self.source_url,
            "output_root": str(self.output_root),
            "status": self.status.value,
            "error": self.error,
            "elapsed_time": round(end - self.start_time, 2) if self.start_time else 0,
        }


@dataclass
class ResourceReference:
    kind: ReferenceKind
    original_value: str
    owner_node: Tag = field(repr=False, compare=False)
    attribute: str
    resolved_url: str = ""
    destination_path: str = ""

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind.label,
            "original_value": self.original_value,
            "resolved_url": self.resolved_url,
            "destination_path": self.destination_path,
        }


@dataclass(frozen=True)
class FailedReference:
    reference: ResourceReference
    reason: str


@dataclass(frozen=True)
class MirrorResult:
    job: MirrorJob
    succeeded: Tuple[ResourceReference, ...]
    failed: Tuple[FailedReference, ...]
    index_path: Path

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict:
        return {
            **self.job.to_dict(),
            "index_path": str(self.index_path),
            "succeeded": [ref.to_dict() for ref in self.succeeded],
            "failed": [
                {**item.reference.to_dict(), "reason": item.reason}
                for item in self.failed
            ],
        }


# --- Fetcher -----------------------------------------------------------------


async def _request(
    session: aiohttp.ClientSession,
    url: str,
    mode: FetchMode,
    error_cls,
) -> Tuple[Union[str, bytes], str]:
    try:
        async with session.get(url) as response:
            if not 200 <= response.status < 300:
                raise error_cls(url, f"HTTP {response.status}")
            if mode is FetchMode.TEXT:
                content = await response.text(errors="replace")
            else:
                content = await response.read()
            return content, str(response.url)
    except asyncio.TimeoutError as e:
        raise error_cls(url, "timed out") from e
    except (aiohttp.ClientError, ValueError) as e:
        raise error_cls(url, f"{type(e).__name__}: {e}") from e


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    mode: FetchMode,
    error_cls=FetchError,
) -> Union[str, bytes]:
    """Fetch a URL as text or bytes. No retry is attempted."""
    content, _ = await _request(session, url, mode, error_cls)
    return content


# --- Reference extraction ------------------------------------------------------


def extract_references(soup: BeautifulSoup) -> List[ResourceReference]:
    """Return every asset reference in document order."""
    references = []
    for node in soup.select(REFERENCE_SELECTOR):
        kind, attribute = TAG_ATTRIBUTES[node.name]
        value = node.get(attribute)
        if not value or not value.strip():
            continue
        value = value.strip()
        if value.lower().startswith("data:"):
            continue
        references.append(ResourceReference(kind, value, node, attribute))
    return references


def find_base_url(soup: BeautifulSoup, page_url: str) -> str:
    """Honor a <base href> element if the page declares one."""
    base = soup.find("base", href=True)
    if base and base["href"].strip():
        try:
            return urljoin(page_url, base["href"].strip())
        except ValueError:
            logger.warning(f"Ignoring malformed base href: {base['href']}")
    return page_url


# --- URL resolution ------------------------------------------------------------


def resolve_url(raw: str, base_url: str) -> str:
    try:
        return urljoin(base_url, raw)
    except ValueError:
        return raw


def destination_basename(resolved_url: str, kind: ReferenceKind) -> str:
    """Last path segment of the URL without query or fragment, or the kind default."""
    try:
        path = urlsplit(resolved_url).path
    except ValueError:
        return kind.default_name
    name = unquote(path.rsplit("/", 1)[-1])
    name = UNSAFE_FILENAME_CHARS.sub("_", name).strip()
    if name in ("", ".", ".."):
        return kind.default_name
    return name


def _dedup_name(name: str, index: int) -> str:
    stem, dot, ext = name.rpartition(".")
    if not stem:
        return f"{name}_{index:03d}"
    return f"{stem}_{index:03d}{dot}{ext}"


def resolve_references(references: List[ResourceReference], base_url: str) -> None:
    """Fill in resolved_url and destination_path for every reference.

    Names are claimed in document order so that duplicate basenames within a
    kind get a numeric suffix instead of overwriting each other.
    """
    claimed = set()
    for ref in references:
        ref.resolved_url = resolve_url(ref.original_value, base_url)
        name = destination_basename(ref.resolved_url, ref.kind)
        candidate = f"{ref.kind.directory}/{name}"
        index = 1
        while candidate in claimed:
            candidate = f"{ref.kind.directory}/{_dedup_name(name, index)}"
            index += 1
        claimed.add(candidate)
        ref.destination_path = candidate


# --- Formatting ----------------------------------------------------------------


def _beautify(text: str, kind: ReferenceKind) -> str:
    try:
        if kind is ReferenceKind.STYLESHEET:
            opts = cssbeautifier.default_options()
            opts.indent_size = INDENT_SIZE
            return cssbeautifier.beautify(text, opts)
        opts = jsbeautifier.default_options()
        opts.indent_size = INDENT_SIZE
        return jsbeautifier.beautify(text, opts)
    except Exception as e:
        raise FormatError(f"Could not format {kind.label}: {e}") from e


def format_content(content: Union[str, bytes], kind: ReferenceKind) -> Union[str, bytes]:
    """Pretty-print stylesheets and scripts; binary assets pass through."""
    if kind.mode is FetchMode.BINARY:
        return content
    try:
        return _beautify(content, kind)
    except FormatError as e:
        logger.debug(f"{e}; keeping original text")
        return content


# --- Writing and rewriting -----------------------------------------------------


def write_file(output_root: Path, destination_path: str, content: Union[str, bytes]) -> Path:
    """Write content below output_root, creating the parent directory if needed."""
    path = output_root / destination_path
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise WriteError(path, e) from e
    return path


def rewrite_reference(ref: ResourceReference) -> None:
    ref.owner_node[ref.attribute] = quote(ref.destination_path)


# --- Orchestration -------------------------------------------------------------


@dataclass
class _JobContext:
    """Session and download limit belonging to one mirror() call."""

    job: MirrorJob
    session: aiohttp.ClientSession
    semaphore: Optional[asyncio.Semaphore]


class PageMirror:
    def __init__(self, config: Optional[MirrorConfig] = None):
        self.config = config or MirrorConfig()

    async def mirror(self, url: str, output_root: Union[str, Path] = DEFAULT_OUTPUT_DIR) -> MirrorResult:
        """Mirror one page and its assets into output_root."""
        job = MirrorJob(source_url=url, output_root=Path(output_root))
        job.start_time = time.time()
        try:
            timeout = aiohttp.ClientTimeout(
                total=self.config.timeout, connect=self.config.connect_timeout
            )
            headers = {"User-Agent": self.config.user_agent}
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                semaphore = None
                if self.config.max_concurrency > 0:
                    semaphore = asyncio.Semaphore(self.config.max_concurrency)
                return await self._run(_JobContext(job, session, semaphore))
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.finished_time = time.time()
            logger.error(f"Mirroring {url} failed: {e}")
            raise

    async def _run(self, ctx: _JobContext) -> MirrorResult:
        job = ctx.job
        job.status = JobStatus.FETCHING_ROOT
        logger.info(f"Fetching {job.source_url}")
        html, page_url = await _request(ctx.session, job.source_url, FetchMode.TEXT, RootFetchError)

        job.status = JobStatus.EXTRACTING
        soup = BeautifulSoup(html, "html.parser")
        references = extract_references(soup)
        resolve_references(references, find_base_url(soup, page_url))
        logger.info(f"Found {len(references)} asset references")

        job.status = JobStatus.DOWNLOADING
        for kind in ReferenceKind:
            (job.output_root / kind.directory).mkdir(parents=True, exist_ok=True)
        outcomes = await asyncio.gather(
            *(self._process_reference(ctx, ref) for ref in references)
        )

        job.status = JobStatus.FINALIZING
        succeeded = []
        failed = []
        for ref, error in zip(references, outcomes):
            if error is None:
                succeeded.append(ref)
            else:
                failed.append(FailedReference(ref, str(error)))
        index_path = write_file(job.output_root, "index.html", str(soup))

        job.status = JobStatus.COMPLETED
        job.finished_time = time.time()
        logger.info(
            f"Page mirrored into {job.output_root} "
            f"({len(succeeded)} assets saved, {len(failed)} failed)"
        )
        return MirrorResult(job, tuple(succeeded), tuple(failed), index_path)

    async def _process_reference(self, ctx: _JobContext, ref: ResourceReference) -> Optional[MirrorError]:
        """Fetch, format, write and rewrite one reference.

        Returns None on success or the error that stopped it. Non-fatal errors
        never escape.
        """
        if ctx.semaphore is None:
            return await self._download(ctx, ref)
        async with ctx.semaphore:
            return await self._download(ctx, ref)

    async def _download(self, ctx: _JobContext, ref: ResourceReference) -> Optional[MirrorError]:
        output_root = ctx.job.output_root
        try:
            content = await fetch(ctx.session, ref.resolved_url, ref.kind.mode, ResourceFetchError)
            if self.config.format_assets:
                content = await asyncio.to_thread(format_content, content, ref.kind)
            path = await asyncio.to_thread(write_file, output_root, ref.destination_path, content)
        except (ResourceFetchError, WriteError) as e:
            logger.warning(f"{ref.kind.label.capitalize()} failed: {ref.original_value} ({e})")
            return e
        rewrite_reference(ref)
        logger.info(f"Saved {ref.kind.label}: {ref.resolved_url} -> {path}")
        return None


async def mirror_page(
    url: str,
    output_root: Union[str, Path] = DEFAULT_OUTPUT_DIR,
    config: Optional[MirrorConfig] = None,
) -> MirrorResult:
    return await PageMirror(config).mirror(url, output_root)
