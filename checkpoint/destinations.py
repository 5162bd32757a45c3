"""Delivery destinations and the health-checked fallback chain."""
from __future__ import annotations

import os
import shutil
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from core.logging_utils import redact_secret
from core.paths import is_writable_dir, safe_label

from .errors import DeliveryError, classify_os_error
from .logs import CheckpointLogger
from .types import DeliveryOutcome

Artifact = Tuple[Path, str]


class Destination:
    """A place captured artifacts are copied to.

    ``deliver`` copies one stored file to ``target`` (a path relative to the
    destination root, mirroring the backup tree) and raises
    :class:`DeliveryError` on any failure.
    """

    name: str = "destination"
    local: bool = False

    def is_healthy(self) -> bool:
        raise NotImplementedError

    def deliver(self, source: Path, target: str) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, object]:
        return {"name": self.name, "local": self.local}


class FolderDestination(Destination):
    """A locally mounted folder kept in sync by a cloud agent."""

    def __init__(self, name: str, sync_root: Path, project_folder: str) -> None:
        self.name = safe_label(name)
        self.sync_root = Path(sync_root)
        self.root = self.sync_root / project_folder

    def is_healthy(self) -> bool:
        # The sync root must already exist; creating it would hide an unmounted volume.
        if not self.sync_root.is_dir():
            return False
        return is_writable_dir(self.root, create=True)

    def deliver(self, source: Path, target: str) -> None:
        final = self.root / target
        tmp = final.parent / f".{final.name}.partial-{uuid.uuid4().hex[:8]}"
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, tmp)
            if tmp.stat().st_size != source.stat().st_size:
                raise DeliveryError(f"EFILE002: size mismatch delivering {target} to {self.name}")
            os.replace(tmp, final)
        except OSError as exc:
            raise DeliveryError(f"{classify_os_error(exc)}: delivery of {target} to {self.name} failed: {exc}") from exc
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def describe(self) -> Dict[str, object]:
        return {"name": self.name, "local": False, "root": str(self.root)}


class HttpDestination(Destination):
    """Remote storage reached through an HTTP API (``PUT <url>/<target>``)."""

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.name = safe_label(name)
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = float(timeout_s)
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    def is_healthy(self) -> bool:
        try:
            response = self._session.get(f"{self.base_url}/health", headers=self._headers(), timeout=self._timeout_s)
        except requests.RequestException:
            return False
        return 200 <= response.status_code < 300

    def deliver(self, source: Path, target: str) -> None:
        url = f"{self.base_url}/{target.lstrip('/')}"
        try:
            with source.open("rb") as handle:
                response = self._session.put(url, data=handle, headers=self._headers(), timeout=self._timeout_s)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DeliveryError(f"ENET001: delivery of {target} to {self.name} failed: {exc}") from exc
        except OSError as exc:
            raise DeliveryError(f"{classify_os_error(exc)}: cannot read {source}: {exc}") from exc

    def describe(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "local": False,
            "url": self.base_url,
            "token": redact_secret(self._token),
        }


class LocalDestination(Destination):
    """The project's own backup directory; always healthy."""

    local = True

    def __init__(self, backup_dir: Path) -> None:
        self.name = "local"
        self.backup_dir = Path(backup_dir)

    def is_healthy(self) -> bool:
        return True

    def deliver(self, source: Path, target: str) -> None:
        # Artifacts are already stored here by the capture itself.
        return None


def _call_with_timeout(func: Callable[..., Any], timeout_s: float, *args: Any) -> Any:
    outcome: Dict[str, Any] = {}

    def run() -> None:
        try:
            outcome["value"] = func(*args)
        except Exception as exc:  # re-raised in the calling thread
            outcome["error"] = exc

    # Daemon so a hung mount or socket never holds up interpreter exit.
    worker = threading.Thread(target=run, name="checkpoint-dest", daemon=True)
    worker.start()
    worker.join(timeout_s)
    if worker.is_alive():
        raise DeliveryError(f"ENET001: no answer within {timeout_s}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


class DestinationChain:
    """Ordered destinations; the first healthy one receives each delivery."""

    def __init__(
        self,
        destinations: Sequence[Destination],
        *,
        logger: CheckpointLogger,
        timeout_s: float = 10.0,
    ) -> None:
        self._destinations = list(destinations)
        self._logger = logger
        self._timeout_s = max(0.1, float(timeout_s))

    @property
    def destinations(self) -> List[Destination]:
        return list(self._destinations)

    @property
    def remote(self) -> List[Destination]:
        return [destination for destination in self._destinations if not destination.local]

    def check(self, destination: Destination) -> bool:
        if destination.local:
            return True
        try:
            healthy = bool(_call_with_timeout(destination.is_healthy, self._timeout_s))
        except DeliveryError as exc:
            self._logger.warning("destination_health_timeout", destination=destination.name, error=str(exc))
            return False
        except Exception as exc:
            self._logger.warning("destination_health_error", destination=destination.name, error=str(exc))
            return False
        if not healthy:
            self._logger.info("destination_unhealthy", destination=destination.name)
        return healthy

    def resolve(self, *, include_local: bool = True) -> Optional[Destination]:
        """Return the first healthy destination, checked afresh on every call."""

        for destination in self._destinations:
            if destination.local and not include_local:
                continue
            if self.check(destination):
                return destination
        return None

    def attempt(self, destination: Destination, source: Path, target: str) -> None:
        """Deliver one artifact with a bounded wait; raise DeliveryError on failure."""

        try:
            _call_with_timeout(destination.deliver, self._timeout_s, source, target)
        except DeliveryError as exc:
            self._logger.event(
                event="delivery_failed",
                phase="delivery",
                ok=False,
                destination=destination.name,
                target=target,
                error=str(exc),
            )
            raise
        self._logger.event(event="delivery_ok", phase="delivery", ok=True, destination=destination.name, target=target)

    def deliver(self, artifacts: Sequence[Artifact]) -> DeliveryOutcome:
        """Send *artifacts* to the resolved destination.

        Once a destination is chosen every artifact goes to it; an artifact
        that fails there is reported in ``failed`` rather than rerouted.
        """

        destination = self.resolve()
        if destination is None:
            return DeliveryOutcome(destination="none", failed=[target for _, target in artifacts])
        if destination.local:
            return DeliveryOutcome(
                destination=destination.name,
                delivered=[target for _, target in artifacts],
                local_only=True,
            )
        outcome = DeliveryOutcome(destination=destination.name)
        for source, target in artifacts:
            try:
                self.attempt(destination, source, target)
            except DeliveryError:
                outcome.failed.append(target)
                continue
            outcome.delivered.append(target)
        return outcome


def build_chain(
    settings_block: Optional[Mapping[str, object]],
    *,
    project_root: Path,
    backup_dir: Path,
    logger: CheckpointLogger,
    session: Optional[requests.Session] = None,
) -> DestinationChain:
    """Build the cloud folder, remote API, local chain from the ``destinations`` settings."""

    block = settings_block or {}
    timeout_s = float(block.get("timeout_s") or 10.0)
    project_folder = str(block.get("project_folder") or Path(project_root).name)
    destinations: List[Destination] = []
    cloud_folder = block.get("cloud_folder")
    if cloud_folder:
        sync_root = Path(os.path.expandvars(os.path.expanduser(str(cloud_folder))))
        destinations.append(FolderDestination("cloud", sync_root, project_folder))
    http_url = block.get("http_url")
    if http_url:
        token_env = str(block.get("http_token_env") or "")
        token = os.environ.get(token_env) if token_env else None
        base = f"{str(http_url).rstrip('/')}/{safe_label(project_folder)}"
        destinations.append(HttpDestination("remote", base, token=token, timeout_s=timeout_s, session=session))
    destinations.append(LocalDestination(backup_dir))
    return DestinationChain(destinations, logger=logger, timeout_s=timeout_s)


__all__ = [
    "Artifact",
    "Destination",
    "DestinationChain",
    "FolderDestination",
    "HttpDestination",
    "LocalDestination",
    "build_chain",
]
