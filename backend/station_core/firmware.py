"""Firmware update lifecycle: download then install, with progress ticking and failure branches."""
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ocpp.v16 import call
from ocpp.v16.enums import FirmwareStatus as OCPPFirmwareStatus

from station_core.correlator import MessageCorrelator, NotConnected
from station_core.scheduler import TimerRegistry

LOG = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_S = 1.0
DEFAULT_MIN_STEP = 5
DEFAULT_MAX_STEP = 20


class FirmwareStatus(str, Enum):
    """Firmware update states per OCPP 1.6 FirmwareStatusNotification."""
    Idle = "Idle"
    Downloading = "Downloading"
    Downloaded = "Downloaded"
    DownloadFailed = "DownloadFailed"
    Installing = "Installing"
    Installed = "Installed"
    InstallationFailed = "InstallationFailed"


_FIRMWARE_STATUS_TO_OCPP: dict[FirmwareStatus, OCPPFirmwareStatus] = {
    FirmwareStatus.Idle: OCPPFirmwareStatus.idle,
    FirmwareStatus.Downloading: OCPPFirmwareStatus.downloading,
    FirmwareStatus.Downloaded: OCPPFirmwareStatus.downloaded,
    FirmwareStatus.DownloadFailed: OCPPFirmwareStatus.download_failed,
    FirmwareStatus.Installing: OCPPFirmwareStatus.installing,
    FirmwareStatus.Installed: OCPPFirmwareStatus.installed,
    FirmwareStatus.InstallationFailed: OCPPFirmwareStatus.installation_failed,
}

# Downloaded is in flight too: the ticker moves it on to Installing.
IN_PROGRESS = frozenset({FirmwareStatus.Downloading, FirmwareStatus.Downloaded, FirmwareStatus.Installing})


@dataclass(frozen=True)
class FirmwareUpdateState:
    """Snapshot of the update. Progress is set only while Downloading/Installing respectively."""

    status: FirmwareStatus = FirmwareStatus.Idle
    download_progress: Optional[int] = None
    install_progress: Optional[int] = None
    location: Optional[str] = None


class FirmwareUpdateStateMachine:
    """
    Idle -> Downloading (0..100) -> Downloaded -> Installing (0..100) -> Installed.

    Progress advances by a random step each tick and never regresses. A failure (signalled
    explicitly or drawn from failure_rate on a tick) ends the attempt in DownloadFailed or
    InstallationFailed. Every status change sends FirmwareStatusNotification. Only one update
    runs at a time; a new start_update from a terminal state begins a fresh attempt.
    """

    TICKER_KEY = ("firmware", "progress")

    def __init__(
        self,
        correlator: MessageCorrelator,
        timers: TimerRegistry,
        rng: random.Random,
        *,
        tick_interval_s: float = DEFAULT_TICK_INTERVAL_S,
        min_step: int = DEFAULT_MIN_STEP,
        max_step: int = DEFAULT_MAX_STEP,
        failure_rate: float = 0.0,
    ) -> None:
        if not 1 <= min_step <= max_step:
            raise ValueError("progress steps must satisfy 1 <= min_step <= max_step")
        self._correlator = correlator
        self._timers = timers
        self._rng = rng
        self._tick_interval_s = tick_interval_s
        self._min_step = min_step
        self._max_step = max_step
        self.failure_rate = failure_rate
        self._state = FirmwareUpdateState()

    @property
    def state(self) -> FirmwareUpdateState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state.status in IN_PROGRESS

    def start_update(self, location: str) -> bool:
        """Begin downloading firmware from location. No-op while an update is in flight."""
        if not location or not location.strip():
            LOG.debug("Firmware update ignored, empty location")
            return False
        if self.in_progress:
            LOG.debug("Firmware update ignored, already %s", self._state.status.value)
            return False
        LOG.info("Firmware update started from %s", location)
        self._enter(FirmwareStatus.Downloading, location=location)
        self._timers.every(self.TICKER_KEY, self._tick_interval_s, self._tick)
        return True

    def signal_failure(self) -> bool:
        """Fail the running phase (download or install). Returns False if nothing is in flight."""
        status = self._state.status
        if status == FirmwareStatus.Downloading:
            self._fail(FirmwareStatus.DownloadFailed)
            return True
        if status == FirmwareStatus.Installing:
            self._fail(FirmwareStatus.InstallationFailed)
            return True
        return False

    def close(self) -> None:
        self._timers.cancel(self.TICKER_KEY)

    def _tick(self) -> None:
        status = self._state.status
        if status == FirmwareStatus.Downloading:
            if self._draw_failure():
                self._fail(FirmwareStatus.DownloadFailed)
            elif self._state.download_progress >= 100:
                self._enter(FirmwareStatus.Downloaded)
            else:
                self._state = self._advance(self._state, "download_progress")
        elif status == FirmwareStatus.Downloaded:
            self._enter(FirmwareStatus.Installing)
        elif status == FirmwareStatus.Installing:
            if self._draw_failure():
                self._fail(FirmwareStatus.InstallationFailed)
            elif self._state.install_progress >= 100:
                self._enter(FirmwareStatus.Installed)
                self._timers.cancel(self.TICKER_KEY)
                LOG.info("Firmware from %s installed", self._state.location)
            else:
                self._state = self._advance(self._state, "install_progress")
        else:
            self._timers.cancel(self.TICKER_KEY)

    def _advance(self, state: FirmwareUpdateState, field_name: str) -> FirmwareUpdateState:
        current = getattr(state, field_name)
        step = self._rng.randint(self._min_step, self._max_step)
        return FirmwareUpdateState(
            status=state.status,
            location=state.location,
            **{field_name: min(100, current + step)},
        )

    def _draw_failure(self) -> bool:
        return self.failure_rate > 0 and self._rng.random() < self.failure_rate

    def _fail(self, status: FirmwareStatus) -> None:
        self._timers.cancel(self.TICKER_KEY)
        LOG.warning("Firmware update from %s ended in %s", self._state.location, status.value)
        self._enter(status)

    def _enter(self, status: FirmwareStatus, location: Optional[str] = None) -> None:
        self._state = FirmwareUpdateState(
            status=status,
            download_progress=0 if status == FirmwareStatus.Downloading else None,
            install_progress=0 if status == FirmwareStatus.Installing else None,
            location=location if location is not None else self._state.location,
        )
        try:
            self._correlator.request(call.FirmwareStatusNotificationPayload(status=_FIRMWARE_STATUS_TO_OCPP[status]))
        except NotConnected:
            LOG.warning("FirmwareStatusNotification %s not sent, not connected", status.value)
