from __future__ import annotations

import logging
import os
import posixpath
import stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TextIO

from hdi.accounts.directory import AccountDirectory
from hdi.digest import hash_file
from hdi.errors import ManifestDataError, VerificationCancelled
from hdi.model import (
    HOSTNAME_PLACEHOLDER,
    ContentCheck,
    DirectoryPolicy,
    DiscrepancyKind,
    DiscrepancyRecord,
    ManifestEntry,
    ScanStats,
)
from hdi.observability import metrics
from hdi.observability.tracing import start_span
from hdi.prelink import PrelinkError, Unprelinker
from hdi.verifier.hidden import is_hidden
from hdi.verifier.report import format_verbose_line
from hdi.verifier.snapshot import ManifestSnapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_SLEEP_SECONDS = 5 * 60
DIRECTORY_LENGTH_WARNING = 100000
MAJORDOMO_PREFIX = "/etc/mail/majordomo/"
MAJORDOMO_WRAPPER_MODE = 0o4750
MAIL_GROUP = "mail"
ROOT_UID = 0

_SPECIAL_FILE_TESTS = (stat.S_ISBLK, stat.S_ISCHR, stat.S_ISFIFO, stat.S_ISSOCK)


@dataclass
class VerifierContext:
    hostname: str
    os_version: str
    uid_min: int
    gid_min: int
    accounts: AccountDirectory
    snapshot: ManifestSnapshot
    unprelinker: Unprelinker
    root: Path = Path("/")
    max_sleep_seconds: float = DEFAULT_MAX_SLEEP_SECONDS
    big_directory_threshold: int = DIRECTORY_LENGTH_WARNING
    lstat: Callable[[Path], os.stat_result] = field(default=os.lstat)
    sleep: Optional[Callable[[float], object]] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    verbose_out: Optional[TextIO] = None


@dataclass(frozen=True)
class VerificationResult:
    records: tuple[DiscrepancyRecord, ...]
    stats: ScanStats


def quote_path(path: str) -> str:
    return "'" + path + "'"


class _VerificationRun:
    def __init__(self, ctx: VerifierContext, *, include_user: bool) -> None:
        self.ctx = ctx
        self.include_user = include_user
        self.records: list[DiscrepancyRecord] = []
        self.stats = ScanStats()
        self._sleep = ctx.sleep if ctx.sleep is not None else ctx.cancel.wait
        self._prelink_chroot = None if ctx.root == Path("/") else ctx.root

    def live_path(self, path: str) -> Path:
        if path == "/":
            return self.ctx.root
        return self.ctx.root / path.lstrip("/")

    def check_cancelled(self) -> None:
        if self.ctx.cancel.is_set():
            raise VerificationCancelled("verification cancelled")

    def add(
        self,
        kind: DiscrepancyKind,
        path: str,
        observed: Optional[str] = None,
        expected: Optional[str] = None,
        action: Optional[str] = None,
    ) -> None:
        record = DiscrepancyRecord(kind=kind, path=path, observed=observed, expected=expected, action=action)
        self.records.append(record)
        metrics.inc_discrepancy(kind=kind.value)
        if self.ctx.verbose_out is not None:
            self.ctx.verbose_out.write(format_verbose_line(record) + "\n")

    def skip(self, live: Path, err: OSError) -> None:
        logger.warning("skipping %s: %s", live, err)
        metrics.inc_skipped()

    def throttle(self, started: float) -> None:
        span = min((time.monotonic() - started) / 2, self.ctx.max_sleep_seconds)
        if span > 0:
            self._sleep(span)

    def lookup(self, path: str) -> Optional[ManifestEntry]:
        snapshot = self.ctx.snapshot
        idx = snapshot.find(path, self.ctx.os_version)
        if idx is None and self.ctx.hostname and self.ctx.hostname in path:
            idx = snapshot.find(path.replace(self.ctx.hostname, HOSTNAME_PLACEHOLDER, 1), self.ctx.os_version)
        if idx is None:
            return None
        snapshot.mark_seen(idx)
        return snapshot.entry(idx)

    def list_children(self, path: str, live: Path) -> Optional[list[str]]:
        try:
            names = sorted(os.listdir(live))
        except OSError as e:
            self.skip(live, e)
            return None
        threshold = self.ctx.big_directory_threshold
        if len(names) >= threshold:
            self.add(DiscrepancyKind.BIG_DIRECTORY, path, action=f"{len(names)} >= {threshold}")
        parent = "" if path == "/" else path
        return [parent + "/" + name for name in names]

    # Full check against the manifest.

    def check_system(self, path: str) -> list[tuple[str, bool]]:
        self.stats.scanned += 1
        self.stats.system_count += 1
        if is_hidden(posixpath.basename(path)):
            self.add(DiscrepancyKind.HIDDEN, path)

        entry = self.lookup(path)
        live = self.live_path(path)
        try:
            st = self.ctx.lstat(live)
        except OSError as e:
            self.skip(live, e)
            return []

        if entry is None:
            flags = "-rf" if stat.S_ISDIR(st.st_mode) else "-f"
            self.add(DiscrepancyKind.EXTRA, path, action=f"rm {quote_path(str(live))} # {flags}")
            return []

        self.check_ownership(path, live, st, entry)
        self.check_mode(path, live, st, entry)

        if stat.S_ISLNK(st.st_mode):
            self.check_symlink(path, live, entry)
            return []
        if any(test(st.st_mode) for test in _SPECIAL_FILE_TESTS):
            return []
        if not stat.S_ISDIR(st.st_mode):
            self.check_content(path, live, st, entry)
            return []

        policy = entry.type.directory_policy
        if policy is DirectoryPolicy.USER:
            self.stats.system_count -= 1
            if not self.include_user:
                self.stats.no_recurse_count += 1
                return []
            self.stats.user_count += 1
            return [(child, True) for child in self.list_children(path, live) or []]
        if policy is DirectoryPolicy.NO_RECURSE:
            self.stats.system_count -= 1
            self.stats.no_recurse_count += 1
            return []
        return [(child, False) for child in self.list_children(path, live) or []]

    def check_ownership(self, path: str, live: Path, st: os.stat_result, entry: ManifestEntry) -> None:
        accounts = self.ctx.accounts
        expected_uid = accounts.uid_for_user(entry.owner)
        if expected_uid is None:
            raise ManifestDataError(f"Unable to find uid for user {entry.owner} on {self.ctx.hostname}, path={path}")
        if st.st_uid != expected_uid:
            self.add(
                DiscrepancyKind.OWNER_MISMATCH,
                path,
                observed=str(st.st_uid),
                expected=str(expected_uid),
                action=f"chown {expected_uid} {quote_path(str(live))}",
            )
        expected_gid = accounts.gid_for_group(entry.group)
        if expected_gid is None:
            raise ManifestDataError(f"Unable to find gid for group {entry.group} on {self.ctx.hostname}, path={path}")
        if st.st_gid != expected_gid:
            self.add(
                DiscrepancyKind.GROUP_MISMATCH,
                path,
                observed=str(st.st_gid),
                expected=str(expected_gid),
                action=f"chgrp {expected_gid} {quote_path(str(live))}",
            )

    def check_mode(self, path: str, live: Path, st: os.stat_result, entry: ManifestEntry) -> None:
        live_type = stat.S_IFMT(st.st_mode)
        expected_type = stat.S_IFMT(entry.mode)
        if live_type != expected_type:
            self.add(
                DiscrepancyKind.TYPE,
                path,
                observed=stat.filemode(live_type),
                expected=stat.filemode(expected_type),
            )
            return
        live_perms = stat.S_IMODE(st.st_mode)
        expected_perms = stat.S_IMODE(entry.mode)
        if live_perms != expected_perms:
            self.add(
                DiscrepancyKind.PERMISSIONS,
                path,
                observed=f"{live_perms:o}",
                expected=f"{expected_perms:o}",
                action=f"chmod {expected_perms:o} {quote_path(str(live))}",
            )

    def check_symlink(self, path: str, live: Path, entry: ManifestEntry) -> None:
        if entry.symlink_target is None:
            return
        try:
            target = os.readlink(live)
        except OSError as e:
            self.skip(live, e)
            return
        if target not in entry.symlink_alternatives():
            self.add(
                DiscrepancyKind.SYMLINK,
                path,
                observed=target,
                expected=entry.symlink_target,
                action=f"rm -f {quote_path(str(live))}; ln -s {quote_path(entry.symlink_target)} {quote_path(str(live))}",
            )

    def check_content(self, path: str, live: Path, st: os.stat_result, entry: ManifestEntry) -> None:
        check = entry.type.content_check
        if check is ContentCheck.NONE or not stat.S_ISREG(st.st_mode) or not entry.is_regular_file:
            return
        started = time.monotonic()
        if check is ContentCheck.UNPRELINK:
            try:
                digest = self.ctx.unprelinker.hash_original(path, chroot=self._prelink_chroot)
            except PrelinkError as e:
                # prelink refuses to restore a binary modified after prelinking.
                self.stats.prelink_files += 1
                self.stats.prelink_bytes += st.st_size
                self.add(DiscrepancyKind.DIGEST, path, observed=str(e), expected=entry.sha256)
                self.throttle(started)
                return
            except (FileNotFoundError, PermissionError) as e:
                self.skip(live, e)
                return
            self.stats.prelink_files += 1
            self.stats.prelink_bytes += st.st_size
            self.stats.sha256_files += 1
            self.stats.sha256_bytes += digest.length
            metrics.inc_hashed_bytes(method="prelink", count=digest.length)
            self.compare_content(path, digest.length, digest.sha256, entry)
            self.throttle(started)
            return

        if st.st_size != entry.size:
            self.add(DiscrepancyKind.LENGTH, path, observed=str(st.st_size), expected=str(entry.size))
            return
        try:
            digest = hash_file(live, expected_length=st.st_size)
        except OSError as e:
            self.skip(live, e)
            return
        self.stats.sha256_files += 1
        self.stats.sha256_bytes += digest.length
        metrics.inc_hashed_bytes(method="sha256", count=digest.length)
        self.compare_content(path, digest.length, digest.sha256, entry)
        self.throttle(started)

    def compare_content(self, path: str, length: int, sha256: str, entry: ManifestEntry) -> None:
        if length != entry.size:
            self.add(DiscrepancyKind.LENGTH, path, observed=str(length), expected=str(entry.size))
        elif sha256 != entry.sha256:
            self.add(DiscrepancyKind.DIGEST, path, observed=sha256, expected=entry.sha256)

    # Relaxed check below user directories.

    def check_user(self, path: str) -> list[tuple[str, bool]]:
        self.stats.scanned += 1
        self.stats.user_count += 1
        if is_hidden(posixpath.basename(path)):
            self.add(DiscrepancyKind.HIDDEN, path)

        live = self.live_path(path)
        try:
            st = self.ctx.lstat(live)
        except FileNotFoundError:
            # Removed during the scan.
            return []
        except OSError as e:
            self.skip(live, e)
            return []

        accounts = self.ctx.accounts
        if not accounts.has_uid(st.st_uid):
            self.add(DiscrepancyKind.NO_OWNER, path, observed=str(st.st_uid))
        if not accounts.has_gid(st.st_gid):
            self.add(DiscrepancyKind.NO_GROUP, path, observed=str(st.st_gid))

        perms = stat.S_IMODE(st.st_mode)
        if perms & (stat.S_ISUID | stat.S_ISGID) and (st.st_uid < self.ctx.uid_min or st.st_gid < self.ctx.gid_min):
            if not self.is_majordomo_wrapper(path, perms, st):
                self.add(DiscrepancyKind.SETUID, path, observed=f"{perms:o}")

        if stat.S_ISDIR(st.st_mode):
            return [(child, True) for child in self.list_children(path, live) or []]
        return []

    def is_majordomo_wrapper(self, path: str, perms: int, st: os.stat_result) -> bool:
        if not path.startswith(MAJORDOMO_PREFIX):
            return False
        rest = path[len(MAJORDOMO_PREFIX):]
        pos = rest.find("/")
        if pos == -1 or rest[pos + 1:] != "wrapper":
            return False
        return (
            perms == MAJORDOMO_WRAPPER_MODE
            and st.st_uid == ROOT_UID
            and self.ctx.accounts.group_name(st.st_gid) == MAIL_GROUP
        )

    def report_missing(self) -> None:
        reported: set[str] = set()
        for entry in self.ctx.snapshot.unseen(self.ctx.os_version):
            if entry.optional:
                continue
            if _has_ancestor_in(entry.path, reported):
                continue
            self.add(DiscrepancyKind.MISSING, entry.path)
            reported.add(entry.path)


def _has_ancestor_in(path: str, paths: set[str]) -> bool:
    while path != "/":
        path = posixpath.dirname(path)
        if path in paths:
            return True
    return False


class DistroVerifier:
    """Compares the live filesystem of one host against its manifest snapshot."""

    def __init__(self, context: VerifierContext) -> None:
        self._ctx = context

    def verify(self, *, include_user: bool = True) -> VerificationResult:
        run = _VerificationRun(self._ctx, include_user=include_user)
        run.stats.start_time = time.time()
        status = "error"
        try:
            with start_span(
                "hdi.verify",
                attributes={"hostname": self._ctx.hostname, "os_version": self._ctx.os_version},
            ):
                stack: list[tuple[str, bool]] = [("/", False)]
                while stack:
                    run.check_cancelled()
                    path, in_user_tree = stack.pop()
                    children = run.check_user(path) if in_user_tree else run.check_system(path)
                    stack.extend(reversed(children))
                run.check_cancelled()
                run.report_missing()
                if not run.stats.counts_consistent():
                    raise AssertionError(
                        f"scanned != system + user + no_recurse: {run.stats.scanned} != "
                        f"{run.stats.system_count} + {run.stats.user_count} + {run.stats.no_recurse_count}"
                    )
            status = "ok"
        except VerificationCancelled:
            status = "cancelled"
            raise
        finally:
            run.stats.end_time = time.time()
            metrics.observe_run(
                stage="verify",
                duration_ms=int((run.stats.end_time - run.stats.start_time) * 1000),
                status=status,
            )
        metrics.last_verify_success_timestamp.set(run.stats.end_time)
        return VerificationResult(records=tuple(run.records), stats=run.stats)
