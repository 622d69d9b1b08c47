"""Detached signature verification with GnuPG.

Checksum manifests are authenticated before any digest inside them is
trusted. Each verification runs in a throw-away GnuPG home that contains
only the trusted keys, and the machine-readable ``--status-fd`` output of
``gpg --verify`` decides the outcome:

- a valid signature by a trusted key returns True
- a well-formed signature that is bad, expired, revoked or made by an
  unknown key returns False
- malformed signature data, missing files and keyring failures raise
  ``SignatureError``
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from isorootfs.config import get_settings
from isorootfs.errors import SignatureError
from isorootfs.types import PipelineStage, VerificationBundle

if TYPE_CHECKING:
    from isorootfs.config import Settings

logger = logging.getLogger(__name__)

STATUS_PREFIX = "[GNUPG:] "

# Status keywords for well-formed signatures that do not authenticate
REJECTING_STATUSES = {"BADSIG", "EXPSIG", "EXPKEYSIG", "REVKEYSIG"}


@dataclass
class VerifyStatus:
    """Parsed ``gpg --status-fd`` output of a verify run."""

    keywords: set[str] = field(default_factory=set)
    fingerprints: list[str] = field(default_factory=list)
    errsig_reasons: list[str] = field(default_factory=list)


def normalize_key_id(key: str) -> str:
    """Return a key id or fingerprint as compact upper-case hex."""
    compact = key.replace(" ", "").upper()
    if compact.startswith("0X"):
        compact = compact[2:]
    return compact


def parse_verify_status(output: str) -> VerifyStatus:
    """Parse GnuPG status lines.

    Args:
        output: Text written by gpg to its status file descriptor.

    Returns:
        VerifyStatus with the keywords seen and the signing fingerprints.
    """
    status = VerifyStatus()
    for line in output.splitlines():
        if not line.startswith(STATUS_PREFIX):
            continue
        parts = line[len(STATUS_PREFIX) :].split()
        if not parts:
            continue
        keyword = parts[0]
        status.keywords.add(keyword)

        if keyword == "VALIDSIG" and len(parts) > 1:
            # VALIDSIG <fpr> ... <primary-key-fpr> (last field)
            status.fingerprints.append(parts[1].upper())
            if len(parts) > 10:
                status.fingerprints.append(parts[-1].upper())
        elif keyword == "ERRSIG" and len(parts) > 6:
            # ERRSIG <keyid> <pkalgo> <hashalgo> <sig_class> <time> <rc>
            status.errsig_reasons.append(parts[6])
    return status


def is_trusted(fingerprints: list[str], keys: list[str]) -> bool:
    """Return True if any fingerprint matches a trusted key id or fingerprint.

    Short and long key ids match the tail of a fingerprint.
    """
    wanted = [normalize_key_id(k) for k in keys]
    return any(fpr.endswith(key) for fpr in fingerprints for key in wanted if key)


def interpret_status(status: VerifyStatus, keys: list[str], manifest: Path) -> bool:
    """Decide a verification outcome from parsed status output.

    Raises:
        SignatureError: If gpg reports malformed or unusable signature data.
    """
    if "NODATA" in status.keywords:
        raise SignatureError(
            f"No signature data found for {manifest}",
            code="malformed_signature",
            stage=PipelineStage.VERIFY,
            context={"path": str(manifest)},
        )

    if status.keywords & REJECTING_STATUSES:
        logger.warning(
            "Signature rejected for %s: %s",
            manifest,
            ", ".join(sorted(status.keywords & REJECTING_STATUSES)),
        )
        return False

    if "ERRSIG" in status.keywords:
        # rc 9 is a missing public key: the signer is not trusted
        if "NO_PUBKEY" in status.keywords or "9" in status.errsig_reasons:
            logger.warning("Signature for %s made by an untrusted key", manifest)
            return False
        raise SignatureError(
            f"Unable to check signature for {manifest} "
            f"(reason {', '.join(status.errsig_reasons) or 'unknown'})",
            code="malformed_signature",
            stage=PipelineStage.VERIFY,
            context={"path": str(manifest)},
        )

    if "VALIDSIG" in status.keywords:
        if is_trusted(status.fingerprints, keys):
            return True
        logger.warning(
            "Signature for %s made by %s, which is not a trusted key",
            manifest,
            ", ".join(status.fingerprints),
        )
        return False

    raise SignatureError(
        f"Unrecognised gpg output verifying {manifest}",
        code="malformed_signature",
        stage=PipelineStage.VERIFY,
        context={"path": str(manifest)},
    )


class SignatureVerifier:
    """Authenticate checksum manifests against a set of trusted keys."""

    def __init__(
        self,
        keys: list[str],
        keyserver: str | None = None,
        keyring: Path | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize SignatureVerifier.

        Args:
            keys: Trusted key ids or fingerprints.
            keyserver: Keyserver to receive keys from (settings default).
            keyring: Local key file to import instead of using a keyserver.
            settings: Application settings.
        """
        self.settings = settings if settings is not None else get_settings()
        self.keys = [normalize_key_id(k) for k in keys]
        self.keyserver = keyserver or self.settings.keyserver
        self.keyring = keyring

    def verify(self, manifest_path: Path, signature_path: Path) -> bool:
        """Check a detached signature over a manifest.

        Args:
            manifest_path: Signed checksum manifest.
            signature_path: Detached signature file.

        Returns:
            True if a trusted key made a valid signature, False otherwise.

        Raises:
            SignatureError: On malformed signatures, missing files or
                keyring failures.
        """
        return self.verify_bundle(
            VerificationBundle(
                manifest_path=manifest_path,
                signature_path=signature_path,
                keys=list(self.keys),
            )
        )

    def verify_bundle(self, bundle: VerificationBundle) -> bool:
        """Check a verification bundle. See ``verify``."""
        for path in (bundle.manifest_path, bundle.signature_path):
            if not path.is_file():
                raise SignatureError(
                    f"File not found: {path}",
                    code="missing_file",
                    stage=PipelineStage.VERIFY,
                    context={"path": str(path)},
                )

        if not bundle.keys:
            raise SignatureError(
                "No trusted keys configured",
                code="no_keys",
                stage=PipelineStage.VERIFY,
                context={"path": str(bundle.manifest_path)},
            )

        work_dir = self.settings.effective_work_dir()
        work_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="gnupg_", dir=work_dir) as home:
            os.chmod(home, 0o700)
            self._import_keys(Path(home), bundle.keys)

            logger.info("Verifying signature of %s", bundle.manifest_path.name)
            result = self._run_gpg(
                Path(home),
                [
                    "--status-fd",
                    "1",
                    "--verify",
                    str(bundle.signature_path),
                    str(bundle.manifest_path),
                ],
            )

        logger.debug("gpg --verify exited with %d", result.returncode)
        valid = interpret_status(
            parse_verify_status(result.stdout), bundle.keys, bundle.manifest_path
        )
        if valid:
            logger.info("Signature of %s is valid", bundle.manifest_path.name)
        return valid

    def _import_keys(self, home: Path, keys: list[str]) -> None:
        if self.keyring is not None:
            args = ["--import", str(self.keyring)]
            source = str(self.keyring)
        else:
            args = ["--keyserver", self.keyserver, "--recv-keys", *keys]
            source = self.keyserver

        logger.debug("Importing %d key(s) from %s", len(keys), source)
        result = self._run_gpg(home, args)
        if result.returncode != 0:
            raise SignatureError(
                f"Failed to import keys from {source}: {result.stderr.strip()}",
                code="keyring_error",
                stage=PipelineStage.VERIFY,
                context={"keyring": source},
            )

    def _run_gpg(self, home: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [
            self.settings.gpg_binary,
            "--homedir",
            str(home),
            "--batch",
            "--no-tty",
            *args,
        ]
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SignatureError(
                f"gpg timed out after {self.settings.command_timeout}s",
                code="timeout",
                stage=PipelineStage.VERIFY,
            ) from e
        except OSError as e:
            raise SignatureError(
                f"Failed to run {self.settings.gpg_binary}: {e}",
                code="gpg_unavailable",
                stage=PipelineStage.VERIFY,
            ) from e


__all__ = [
    "SignatureVerifier",
    "VerifyStatus",
    "interpret_status",
    "is_trusted",
    "normalize_key_id",
    "parse_verify_status",
]
