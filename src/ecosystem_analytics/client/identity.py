"""Anonymous participant identity.

The participant hash is a SHA-256 digest of coarse machine characteristics. It is
stable per machine and cannot be reversed into the host name or anything else that
went into it. When the machine cannot be described, a random identifier is generated
once and persisted so repeated runs still map to the same participant.
"""
from __future__ import annotations
import hashlib
import logging
import os
import platform
import socket
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PARTICIPANT_ID_FILE = "participant_id"


@dataclass(frozen=True)
class MachineCharacteristics:
    hostname: str
    platform: str
    architecture: str
    cpu_model: str

    def composite(self) -> str:
        return "-".join([self.hostname, self.platform, self.architecture, self.cpu_model])


def _cpu_model() -> str:
    # platform.processor() is empty on most Linux builds
    model = platform.processor()
    if model:
        return model
    try:
        with open("/proc/cpuinfo", encoding="utf-8") as fh:
            for line in fh:
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return ""


def collect_machine_characteristics() -> MachineCharacteristics | None:
    """Describe the local machine, or None if any characteristic is unavailable."""
    try:
        chars = MachineCharacteristics(
            hostname=socket.gethostname(),
            platform=platform.system().lower(),
            architecture=platform.machine(),
            cpu_model=_cpu_model(),
        )
    except OSError as e:
        logger.debug("machine characteristics unavailable: %s", e)
        return None
    if not all([chars.hostname, chars.platform, chars.architecture, chars.cpu_model]):
        return None
    return chars


def compute_participant_hash(characteristics: MachineCharacteristics) -> str:
    return hashlib.sha256(characteristics.composite().encode("utf-8")).hexdigest()


def _persisted_random_hash(state_dir: Path) -> str:
    path = state_dir / PARTICIPANT_ID_FILE
    try:
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    except OSError:
        pass
    value = hashlib.sha256(uuid.uuid4().hex.encode("utf-8")).hexdigest()
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        # still usable for this process; the next run will generate a new one
        logger.warning("could not persist participant id to %s: %s", path, e)
    return value


def resolve_participant_hash(state_dir: str | Path, characteristics: MachineCharacteristics | None = None) -> str:
    chars = characteristics if characteristics is not None else collect_machine_characteristics()
    if chars is not None:
        return compute_participant_hash(chars)
    return _persisted_random_hash(Path(state_dir).expanduser())
