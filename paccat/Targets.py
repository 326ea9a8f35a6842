"""Resolve user targets into verified local package archives.

A target is a package name (optionally ``repo/`` qualified or carrying a
version constraint), a URL, or the path of a package file. Database
packages are only downloaded if their file manifest can contribute to a
requested pattern; everything that is downloaded is fetched as one batch
and every resulting file passes the verification gate before it is
returned.
"""

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .Config import SearchMode
from .Errors import TargetUnresolvable
from .Matcher import Matcher
from .Protocols import (
    DownloaderProtocol,
    Package,
    PackageQueryProtocol,
    Provenance,
    ResolvedFile,
)
from .Verify import TrustPolicy, VerificationGate

logger = logging.getLogger(__name__)


class TargetKind(enum.Enum):
    SYNC_PACKAGE = "sync"
    LOCAL_PACKAGE = "local"
    LOCAL_FILE = "file"
    REMOTE_URL = "url"


@dataclass(frozen=True)
class Target:
    raw: str
    kind: TargetKind
    package: Optional[Package] = None


@dataclass(frozen=True)
class SignaturePolicies:
    """Trust policy per provenance class.

    `repository` is the default for database packages; a repository's own
    SigLevel, when the query service reports one, takes precedence.
    """
    local_file: TrustPolicy
    repository: TrustPolicy
    remote_file: TrustPolicy


class TargetResolver:
    """Turn target strings into `ResolvedFile` records.

    Attributes:
        query (PackageQueryProtocol): Package database access.
        downloader (DownloaderProtocol): Batch downloader.
        gate (VerificationGate): Signature checks before files are read.
        matcher (Matcher): Shared with the entry stream; consulted for
            manifest filtering and cleared when a new batch is resolved.
        policies (SignaturePolicies): Trust policy per provenance.
        all_matches (bool): Every occurrence is wanted, so satisfied
            patterns never exclude a package.
        executable_only (bool): Only executables are wanted; package scans
            are then not cut down to a single package.
    """

    def __init__(self, query: PackageQueryProtocol, downloader: DownloaderProtocol,
                 gate: VerificationGate, matcher: Matcher, policies: SignaturePolicies,
                 all_matches: bool = False, executable_only: bool = False) -> None:
        self.query = query
        self.downloader = downloader
        self.gate = gate
        self.matcher = matcher
        self.policies = policies
        self.all_matches = all_matches
        self.executable_only = executable_only

    def classify(self, raw: str, local: bool = False) -> Target:
        """Classify one target string.

        Database lookup comes first, then URLs, then existing files.

        Raises:
            TargetUnresolvable: If the string is none of these.
        """
        pkg = self.query.find(raw, local=local)
        if pkg is not None:
            kind = TargetKind.LOCAL_PACKAGE if pkg.is_local else TargetKind.SYNC_PACKAGE
            return Target(raw, kind, pkg)
        if "://" in raw:
            return Target(raw, TargetKind.REMOTE_URL)
        if Path(raw).exists():
            return Target(raw, TargetKind.LOCAL_FILE)
        raise TargetUnresolvable(raw)

    def wanted(self, pkg: Package) -> bool:
        """Whether `pkg`'s manifest can satisfy a still-open pattern.

        Packages without a manifest are always wanted.
        """
        manifest = self.query.file_manifest(pkg)
        if manifest is None:
            return True
        consume = not self.all_matches
        # every entry is offered so all patterns it satisfies get recorded
        hits = [self.matcher.is_match(path, consume=consume) for path in manifest]
        return any(hits)

    def scan(self, mode: SearchMode) -> List[Package]:
        """Pick candidate packages from a whole database.

        Without --all (or an executable-only filter) only the first
        candidate is kept.
        """
        local = mode is SearchMode.LOCAL_DB
        candidates = [pkg for pkg in self.query.packages(local=local) if self.wanted(pkg)]
        logger.debug("%d candidate packages in %s scan", len(candidates), mode.value)
        if not (self.all_matches or self.executable_only):
            candidates = candidates[:1]
        return candidates

    def _policy(self, pkg: Package) -> TrustPolicy:
        return self.query.policy_for(pkg) or self.policies.repository

    def resolve(self, targets: Sequence[str], mode: SearchMode = SearchMode.TARGETS) -> List[ResolvedFile]:
        """Resolve a batch of targets.

        Args:
            targets: Target strings; may be empty for database scans.
            mode: How to find packages when no targets are given, and
                which database names are looked up in.

        Returns:
            list[ResolvedFile]: Local files first, then repository
            downloads, then URL downloads.

        Raises:
            TargetUnresolvable: For the first target that cannot be classified.
            DownloadFailure: If a download fails.
            VerificationFailure: If a file fails its trust policy.
        """
        self.matcher.clear()
        local = mode is SearchMode.LOCAL_DB

        files: List[str] = []
        urls: List[str] = []
        packages: List[Package] = []

        if targets:
            classified = [self.classify(raw, local=local) for raw in targets]
            for target in classified:
                if target.kind is TargetKind.LOCAL_FILE:
                    files.append(target.raw)
                elif target.kind is TargetKind.REMOTE_URL:
                    urls.append(target.raw)
                elif self.wanted(target.package):
                    packages.append(target.package)
                else:
                    logger.debug("skipping %s: no requested file in its manifest", target.package.name)
        elif mode is not SearchMode.TARGETS:
            packages = self.scan(mode)

        repo: List[Tuple[str, Package]] = [(self.query.download_url(pkg), pkg) for pkg in packages]
        self.matcher.clear()

        downloaded = self.downloader.fetch([url for url, _ in repo] + urls)

        resolved = [ResolvedFile(Path(f), Provenance.LOCAL_FILE, self.policies.local_file) for f in files]
        for path, (_, pkg) in zip(downloaded, repo):
            resolved.append(ResolvedFile(Path(path), Provenance.REPOSITORY, self._policy(pkg)))
        for path in downloaded[len(repo):]:
            resolved.append(ResolvedFile(Path(path), Provenance.REMOTE_FILE, self.policies.remote_file))

        self.gate.apply(resolved)
        return resolved
