"""Certificate check and renewal scheduler."""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from .config import Config
from .errors import AutocertError, IssuanceError, MalformedCertificate, StartupIssuanceError
from .expiry import needs_renewal
from .models import CertJob, JobState, JobStatus

logger = logging.getLogger(__name__)


class RestartSignal:
    """One-shot, idempotent "restart required" flag shared by all jobs."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def trigger(self, reason: str) -> bool:
        """Set the signal. Only the first caller gets True."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
        logger.warning(f"Restart requested: {reason}")
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class CertificateScheduler:
    """Runs the startup issuance pass and the periodic per-job rechecks."""

    def __init__(self, jobs: List[CertJob], issuer, nonce_directory: Path,
                 restart_signal: Optional[RestartSignal] = None):
        """Initialize scheduler.

        Args:
            jobs: registered jobs with resolved paths
            issuer: object with ``issue(job, nonce_directory)``
            nonce_directory: root of the HTTP-01 proof files
            restart_signal: signal to raise when a certificate changes
        """
        self.jobs = list(jobs)
        self.issuer = issuer
        self.nonce_directory = Path(nonce_directory)
        self.restart_signal = restart_signal or RestartSignal()
        self.scheduler = BackgroundScheduler(
            jobstores={
                'default': MemoryJobStore()
            },
            executors={
                'default': ThreadPoolExecutor(Config.SCHEDULER_MAX_WORKERS)
            },
            job_defaults={
                'coalesce': True,
                'max_instances': 1
            },
            timezone=timezone.utc,
        )

        self.statuses: Dict[str, JobStatus] = {
            job.name: JobStatus(job_name=job.name) for job in self.jobs
        }
        # Held for the whole check so a job never has two issuances in flight
        self._locks: Dict[str, threading.Lock] = {
            job.name: threading.Lock() for job in self.jobs
        }

    def _set_state(self, job: CertJob, state: JobState, error: Optional[str] = None):
        status = self.statuses[job.name]
        status.state = state
        if state == JobState.ISSUED:
            status.last_issued = datetime.now(timezone.utc)
        status.last_error = error

    def needs_issuance(self, job: CertJob) -> bool:
        """Expiry check that escalates, then reissues, malformed certificates."""
        self.statuses[job.name].last_checked = datetime.now(timezone.utc)
        try:
            return needs_renewal(job.cert_path, job.key_path, job.renew_within)
        except MalformedCertificate as e:
            logger.error(f"{job.name}: {e}; the certificate will be reissued")
            return True

    def _issue(self, job: CertJob):
        self._set_state(job, JobState.ISSUING)
        logger.info(f"{job.name}: issuing certificate for {job.domains}")
        certificate = self.issuer.issue(job, self.nonce_directory)
        self._set_state(job, JobState.ISSUED)
        logger.info(f"{job.name}: certificate issued, expires {getattr(certificate, 'expires_at', 'unknown')}")
        return certificate

    def run_startup_pass(self) -> bool:
        """Check every job once and issue inline where needed.

        Returns:
            True if at least one certificate was issued

        Raises:
            StartupIssuanceError: any job could not be checked or issued
        """
        issued_any = False
        for job in self.jobs:
            with self._locks[job.name]:
                try:
                    if not self.needs_issuance(job):
                        logger.info(f"{job.name}: certificate is current")
                        self._set_state(job, JobState.WAITING)
                        continue
                    self._issue(job)
                    issued_any = True
                except AutocertError as e:
                    self._set_state(job, JobState.FAILED, str(e))
                    raise StartupIssuanceError(f"could not create cert for {job.name}: {e}") from e
                except Exception as e:
                    logger.exception(f"Unexpected error creating certificate {job.name}")
                    self._set_state(job, JobState.FAILED, f"{type(e).__name__}: {e}")
                    raise StartupIssuanceError(f"could not create cert for {job.name}: {e}") from e
        return issued_any

    def check_job(self, job: CertJob) -> bool:
        """One periodic tick for one job. Errors stay inside the tick.

        Returns:
            True if a new certificate was issued
        """
        with self._locks[job.name]:
            try:
                if not self.needs_issuance(job):
                    logger.debug(f"{job.name}: no renewal needed")
                    self._set_state(job, JobState.WAITING)
                    return False
                self._issue(job)
            except IssuanceError as e:
                logger.error(f"Error renewing certificate {job.name}: {e}")
                self._set_state(job, JobState.FAILED, str(e))
                return False
            except AutocertError as e:
                logger.error(f"Error checking certificate {job.name}: {e}")
                self._set_state(job, JobState.FAILED, str(e))
                return False
            except Exception as e:
                logger.exception(f"Unexpected error checking certificate {job.name}")
                self._set_state(job, JobState.FAILED, f"{type(e).__name__}: {e}")
                return False

        self.restart_signal.trigger(f"certificate for {job.name} was renewed")
        return True

    def start(self) -> bool:
        """Run the startup pass, then arm one interval timer per job.

        Returns:
            True if periodic checks were armed, False if a restart is needed
        """
        if self.scheduler.running:
            return True

        if self.run_startup_pass():
            self.restart_signal.trigger("certificates were issued at startup")
            return False

        self.scheduler.start()
        for job in self.jobs:
            self.scheduler.add_job(
                self.check_job,
                'interval',
                seconds=job.check_every.total_seconds(),
                args=[job],
                id=f"renewal_check:{job.name}",
                replace_existing=True
            )
            logger.info(f"{job.name}: checking every {job.check_every}")

        logger.info(f"Scheduler started for {len(self.jobs)} certificate job(s)")
        return True

    def stop(self):
        """Stop the scheduler without waiting for in-flight checks."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self.scheduler.running
