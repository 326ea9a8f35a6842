"""Signature verification for package archives.

A `TrustPolicy` says whether a detached ``.sig`` file must exist and
whether the signing key has to be trusted. Policies are parsed from
pacman ``SigLevel`` strings; which one applies to a file depends on where
the file came from (a local file, a repository download or a
user-supplied URL).

Verification itself is delegated to the ``gpg`` executable, the same way
the archive engines delegate RAR decoding to ``unrar``.
"""

import enum
import logging
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from .Errors import ConfigError, VerificationFailure

if TYPE_CHECKING:
    from .Protocols import ResolvedFile, VerifierProtocol

logger = logging.getLogger(__name__)


class SigCheck(enum.Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    NEVER = "never"


@dataclass(frozen=True)
class TrustPolicy:
    check: SigCheck = SigCheck.OPTIONAL
    trusted_only: bool = True


DEFAULT_POLICY = TrustPolicy()

_CHECK_TOKENS = {
    "Never": SigCheck.NEVER,
    "Optional": SigCheck.OPTIONAL,
    "Required": SigCheck.REQUIRED,
}

_TRUST_TOKENS = {
    "TrustedOnly": True,
    "TrustAll": False,
}


def parse_siglevel(value: str, base: TrustPolicy = DEFAULT_POLICY) -> TrustPolicy:
    """Apply the package-related tokens of a SigLevel string to `base`.

    Args:
        value: Whitespace separated SigLevel tokens, e.g.
            ``"Required DatabaseOptional"``.
        base: Policy the tokens are applied on top of.

    Returns:
        TrustPolicy: The resulting policy.

    Raises:
        ConfigError: On an unknown token.
    """
    policy = base
    for token in value.split():
        if token.startswith("Database"):
            continue
        name = token[len("Package"):] if token.startswith("Package") else token
        if name in _CHECK_TOKENS:
            policy = replace(policy, check=_CHECK_TOKENS[name])
        elif name in _TRUST_TOKENS:
            policy = replace(policy, trusted_only=_TRUST_TOKENS[name])
        else:
            raise ConfigError(f"invalid SigLevel value: {token}")
    return policy


def _check_gpg_in_path() -> str:
    gpg = shutil.which("gpg")
    if not gpg:
        raise VerificationFailure("the 'gpg' executable is not found in PATH")
    return gpg


class GpgVerifier:
    """Verify detached package signatures with gpg.

    Attributes:
        gpg_dir (Path | None): Keyring directory passed as ``--homedir``.
    """

    def __init__(self, gpg_dir: Optional[Path] = None) -> None:
        self.gpg_dir = gpg_dir

    def verify(self, path: Path, policy: TrustPolicy) -> None:
        """Check `path` against `policy`.

        Raises:
            VerificationFailure: If the signature is missing when required,
                invalid, or made by an untrusted key under ``TrustedOnly``.
        """
        if policy.check is SigCheck.NEVER:
            return

        sig = path.with_name(path.name + ".sig")
        if not sig.exists():
            if policy.check is SigCheck.OPTIONAL:
                logger.debug("no signature for %s, accepted by policy", path.name)
                return
            raise VerificationFailure(f"{path.name}: missing required signature")

        command = [_check_gpg_in_path(), "--batch", "--status-fd", "1"]
        if self.gpg_dir is not None:
            command += ["--homedir", str(self.gpg_dir)]
        command += ["--verify", str(sig), str(path)]

        logger.debug("running %s", " ".join(command))
        proc = subprocess.run(command, capture_output=True, text=True)
        status = _status_keywords(proc.stdout)

        if proc.returncode != 0 or "VALIDSIG" not in status:
            raise VerificationFailure(f"{path.name}: invalid or corrupted package (PGP signature)")
        if policy.trusted_only and not status & {"TRUST_FULLY", "TRUST_ULTIMATE"}:
            raise VerificationFailure(f"{path.name}: signature is from an untrusted key")


def _status_keywords(output: str) -> set:
    keywords = set()
    for line in output.splitlines():
        if line.startswith("[GNUPG:] "):
            parts = line.split()
            if len(parts) > 1:
                keywords.add(parts[1])
    return keywords


class VerificationGate:
    """Apply each file's trust policy before the file may be read."""

    def __init__(self, verifier: "VerifierProtocol") -> None:
        self.verifier = verifier

    def apply(self, files: Iterable["ResolvedFile"]) -> None:
        """Verify every resolved file, stopping at the first failure.

        Args:
            files: The resolved package files, in target order.

        Raises:
            VerificationFailure: Naming the first file that fails.
        """
        for resolved in files:
            try:
                self.verifier.verify(resolved.path, resolved.policy)
            except VerificationFailure as e:
                raise VerificationFailure(f"failed to verify {resolved.path}") from e
