from __future__ import annotations

from typing import Iterable

EXIT_OK = 0
EXIT_DATAERR = 65
EXIT_SOFTWARE = 70
EXIT_IOERR = 74
EXIT_CONFIG = 78


class DistroError(Exception):
    """Base class for failures of a compile or verification run."""

    exit_code = EXIT_SOFTWARE


class ConfigurationCorruption(DistroError):
    exit_code = EXIT_DATAERR


class NeverPathsFound(ConfigurationCorruption):
    """One or more paths exist that are listed in a nevers list."""

    def __init__(self, paths: Iterable[str]) -> None:
        self.paths = tuple(sorted(set(paths)))
        if not self.paths:
            raise ValueError("NeverPathsFound requires at least one path")
        super().__init__("One or more files exist that are listed in nevers")


class DuplicateRuleEntry(ConfigurationCorruption):
    def __init__(self, *, list_path: str, path: str) -> None:
        self.list_path = list_path
        self.path = path
        super().__init__(f"Duplicate filename in {list_path}: {path}")


class OverlappingRuleEntry(ConfigurationCorruption):
    def __init__(self, *, os_version: str, path: str, kinds: Iterable[str]) -> None:
        self.os_version = os_version
        self.path = path
        self.kinds = tuple(sorted(kinds))
        super().__init__(f"{os_version}: {path} is listed in more than one list: {', '.join(self.kinds)}")


class MalformedRuleLine(AssertionError):
    pass


class TemplateDataError(DistroError):
    exit_code = EXIT_DATAERR


class ManifestDataError(DistroError):
    exit_code = EXIT_DATAERR


class VerificationCancelled(DistroError):
    pass


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, DistroError):
        return exc.exit_code
    if isinstance(exc, OSError):
        return EXIT_IOERR
    if isinstance(exc, ValueError):
        return EXIT_DATAERR
    return EXIT_SOFTWARE
