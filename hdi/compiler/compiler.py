from __future__ import annotations

import logging
import os
import stat
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from hdi.accounts.template_names import TemplateNameResolver
from hdi.compiler.sink import ManifestSink
from hdi.compiler.work_queue import WorkQueue
from hdi.config import OperatingSystemVersion, default_thread_count
from hdi.digest import hash_file
from hdi.errors import NeverPathsFound
from hdi.model import ContentCheck, FileType, ManifestEntry
from hdi.observability import metrics
from hdi.observability.tracing import start_span
from hdi.prelink import Unprelinker
from hdi.rules.ruleset import ClassificationRuleSet, RuleKind, RuleSetCache

logger = logging.getLogger(__name__)

UNMATCHED_KINDS = (
    RuleKind.CONFIG,
    RuleKind.NO_RECURSE,
    RuleKind.OPTIONAL,
    RuleKind.PRELINK,
    RuleKind.USER,
)

_BANNER = "*" * 73


def join_template_path(template_dir: Path, path: str) -> Path:
    if path == "/":
        return template_dir
    return template_dir / path.lstrip("/")


def child_path(parent: str, name: str) -> str:
    return "/" + name if parent == "/" else parent + "/" + name


@dataclass(frozen=True)
class _WorkItem:
    os_version: OperatingSystemVersion
    path: str


@dataclass
class CompileResult:
    entries_by_os_version: dict[str, int] = field(default_factory=dict)
    unmatched: dict[tuple[str, RuleKind], list[str]] = field(default_factory=dict)

    @property
    def total_entries(self) -> int:
        return sum(self.entries_by_os_version.values())


@dataclass
class CompileContext:
    template_root: Path
    unprelinker: Unprelinker
    threads: int = field(default_factory=default_thread_count)
    rule_sets: Optional[RuleSetCache] = None

    def __post_init__(self) -> None:
        if self.threads <= 0:
            raise ValueError("threads must be positive")
        if self.rule_sets is None:
            self.rule_sets = RuleSetCache(template_root=self.template_root)


class ManifestCompiler:
    """Walks template trees and emits one manifest entry per path.

    Either the whole run succeeds and the sink is committed, or the first
    error is re-raised and nothing is committed.
    """

    def __init__(self, context: CompileContext) -> None:
        self._ctx = context
        self._lock = threading.Lock()
        self._resolvers: dict[str, TemplateNameResolver] = {}
        self._counts: dict[str, int] = {}

    def _rules(self, osv: OperatingSystemVersion) -> ClassificationRuleSet:
        assert self._ctx.rule_sets is not None
        return self._ctx.rule_sets.get(osv)

    def _resolver(self, osv: OperatingSystemVersion) -> TemplateNameResolver:
        with self._lock:
            resolver = self._resolvers.get(osv.key)
            if resolver is None:
                resolver = TemplateNameResolver(template_dir=osv.template_dir(self._ctx.template_root))
                self._resolvers[osv.key] = resolver
            return resolver

    def check_nevers(self, os_versions: Sequence[OperatingSystemVersion]) -> None:
        found: list[str] = []
        for osv in os_versions:
            template_dir = osv.template_dir(self._ctx.template_root)
            for p in sorted(self._rules(osv).lists[RuleKind.NEVER]):
                full = join_template_path(template_dir, p)
                try:
                    os.lstat(full)
                except FileNotFoundError:
                    continue
                found.append(str(full))
        if found:
            raise NeverPathsFound(found)

    def compile(self, os_versions: Sequence[OperatingSystemVersion], sink: ManifestSink) -> CompileResult:
        if not os_versions:
            raise ValueError("at least one operating system version is required")
        keys = [osv.key for osv in os_versions]
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate operating system versions: {keys}")

        started = time.monotonic()
        status = "error"
        try:
            with start_span("hdi.compile", attributes={"os_versions": ",".join(keys), "threads": self._ctx.threads}):
                for osv in os_versions:
                    self._rules(osv)
                self.check_nevers(os_versions)

                self._counts = {osv.key: 0 for osv in os_versions}
                for osv in os_versions:
                    sink.begin(osv.key)
                queue: WorkQueue[_WorkItem] = WorkQueue()
                queue.put_many(_WorkItem(os_version=osv, path="/") for osv in reversed(os_versions))
                self._run_workers(queue, sink)

                sink.commit()
            status = "ok"
        finally:
            metrics.observe_run(stage="compile", duration_ms=int((time.monotonic() - started) * 1000), status=status)

        result = CompileResult(entries_by_os_version=dict(self._counts))
        for osv in os_versions:
            metrics.inc_manifest_entries(os_version=osv.key, count=self._counts[osv.key])
            rules = self._rules(osv)
            for kind in UNMATCHED_KINDS:
                missing = rules.unmatched(kind)
                if missing:
                    result.unmatched[(osv.key, kind)] = missing
        return result

    def _run_workers(self, queue: WorkQueue[_WorkItem], sink: ManifestSink) -> None:
        with ThreadPoolExecutor(max_workers=self._ctx.threads, thread_name_prefix="hdi-compile") as pool:
            futures = [pool.submit(self._worker, queue, sink) for _ in range(self._ctx.threads)]
            for future in futures:
                future.result()
        error = queue.error
        if error is not None:
            raise error

    def _worker(self, queue: WorkQueue[_WorkItem], sink: ManifestSink) -> None:
        while True:
            item = queue.get()
            if item is None:
                return
            try:
                children = self._process(item, sink)
                if children:
                    queue.put_many(reversed(children))
            except BaseException as e:
                logger.error("compile failed on %s:%s: %s", item.os_version.key, item.path, e)
                queue.cancel(e)
            finally:
                queue.task_done()

    def _process(self, item: _WorkItem, sink: ManifestSink) -> list[_WorkItem]:
        osv = item.os_version
        rules = self._rules(osv)
        template_dir = osv.template_dir(self._ctx.template_root)
        full = join_template_path(template_dir, item.path)

        if rules.is_never(item.path):
            raise NeverPathsFound([str(full)])
        file_type = rules.classify(item.path)
        optional = rules.is_optional(item.path)

        st = os.lstat(full)
        mode = st.st_mode
        is_regular = stat.S_ISREG(mode)
        resolver = self._resolver(osv)

        size: Optional[int] = None
        sha256: Optional[str] = None
        if is_regular and file_type.stores_size:
            size = st.st_size
        if is_regular and file_type.content_check is ContentCheck.DIRECT:
            digest = hash_file(full, expected_length=st.st_size)
            sha256 = digest.sha256
            metrics.inc_hashed_bytes(method="sha256", count=digest.length)
        elif is_regular and file_type.content_check is ContentCheck.UNPRELINK:
            digest = self._ctx.unprelinker.hash_original(item.path, chroot=template_dir)
            size = digest.length
            sha256 = digest.sha256
            metrics.inc_hashed_bytes(method="prelink", count=digest.length)

        symlink_target: Optional[str] = None
        if stat.S_ISLNK(mode):
            symlink_target = os.readlink(full)

        sink.emit(
            ManifestEntry(
                os_version=osv.key,
                path=item.path,
                type=file_type,
                mode=mode,
                owner=resolver.username(st.st_uid, path=str(full)),
                group=resolver.groupname(st.st_gid, path=str(full)),
                optional=optional,
                size=size,
                sha256=sha256,
                symlink_target=symlink_target,
            )
        )
        with self._lock:
            self._counts[osv.key] += 1

        if not stat.S_ISDIR(mode) or file_type.is_boundary:
            return []
        return [_WorkItem(os_version=osv, path=child_path(item.path, name)) for name in sorted(os.listdir(full))]


def format_unmatched_warnings(
    result: CompileResult, *, template_root: Path, os_versions: Sequence[OperatingSystemVersion]
) -> list[str]:
    """Render the warning block printed after a successful compile."""
    lines: list[str] = []
    for osv in os_versions:
        for kind in UNMATCHED_KINDS:
            missing = result.unmatched.get((osv.key, kind))
            if not missing:
                continue
            list_path = osv.rule_list_path(template_root, kind.file_extension)
            lines.append("")
            lines.append(_BANNER)
            lines.append(f"* WARNING: These files are listed in {list_path}")
            lines.append("* but not found in the distribution template.")
            lines.append(_BANNER)
            lines.extend(missing)
    return lines
