"""ACME protocol client implementation."""

import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple, Union
from urllib.parse import urlparse

import josepy as jose
import requests
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from . import __version__
from .challenge import read_challenge, remove_challenge, write_challenge
from .config import Config
from .errors import (
    AcmeNetworkError,
    CertificateFileError,
    ChallengeUnavailable,
    IssuanceError,
    IssuanceTimeout,
    ValidationFailed,
)
from .logging_config import TRACE
from .models import CertJob, IssuedCertificate

logger = logging.getLogger(__name__)

USER_AGENT = f"acme-autocert/{__version__}"


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    """Write data next to path, fsync it and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ACMEClient:
    """ACME protocol client for certificate issuance."""

    def __init__(self, account_directory: Union[str, Path]):
        """Initialize ACME client with a directory for account keys."""
        self.account_directory = Path(account_directory)
        self.account_key_size = Config.RSA_KEY_SIZE
        self.cert_key_size = Config.RSA_KEY_SIZE
        self._account_lock = threading.Lock()

    def _generate_rsa_key(self, key_size: int) -> Tuple[rsa.RSAPrivateKey, bytes]:
        """Generate RSA key pair."""
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
        )

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )

        return private_key, private_pem

    def _account_key_path(self, provider: str, email: Optional[str]) -> Path:
        # Extract provider name from URL
        provider_name = urlparse(provider).hostname.replace('.', '_')
        if email:
            return self.account_directory / f"{provider_name}_{email}.pem"
        return self.account_directory / f"{provider_name}.pem"

    def _get_or_create_account_key(self, provider: str, email: Optional[str]) -> jose.JWKRSA:
        """Get existing or create new account key."""
        path = self._account_key_path(provider, email)

        # Jobs sharing a CA and contact must end up on the same account
        with self._account_lock:
            if path.is_file():
                try:
                    private_key = serialization.load_pem_private_key(
                        path.read_bytes(),
                        password=None,
                    )
                except (ValueError, TypeError) as e:
                    raise CertificateFileError(f"Unusable ACME account key {path}: {e}") from e
                return jose.JWKRSA(key=private_key)

            private_key, private_pem = self._generate_rsa_key(self.account_key_size)
            _atomic_write(path, private_pem, 0o600)
            logger.info(f"Created ACME account key {path}")

        return jose.JWKRSA(key=private_key)

    def _create_acme_client(self, directory_url: str, account_key: jose.JWKRSA) -> client.ClientV2:
        """Create ACME client instance."""
        net = client.ClientNetwork(
            account_key,
            user_agent=USER_AGENT,
            timeout=Config.ACME_NETWORK_TIMEOUT,
        )
        directory = messages.Directory.from_json(net.get(directory_url).json())
        return client.ClientV2(directory, net=net)

    def _register_or_login(self, acme_client: client.ClientV2, email: Optional[str]) -> messages.RegistrationResource:
        """Register new account or login with existing."""
        try:
            new_reg = messages.NewRegistration.from_data(
                email=email,
                terms_of_service_agreed=True
            )
            regr = acme_client.new_account(new_reg)
            logger.info(f"Registered new ACME account for {email or 'anonymous contact'}")
            return regr
        except errors.ConflictError as e:
            # The Location header in the ConflictError holds the account URI
            logger.info(f"Account already exists for {email or 'this key'}, retrieving it")
            regr = messages.RegistrationResource(
                body=messages.Registration(key=acme_client.net.key.public_key()),
                uri=e.location
            )
            return acme_client.query_registration(regr)

    def _create_csr(self, private_key: rsa.RSAPrivateKey, domains: List[str]) -> bytes:
        """Create Certificate Signing Request in PEM format."""
        builder = x509.CertificateSigningRequestBuilder()

        # Common name is the first domain
        builder = builder.subject_name(x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, domains[0])
        ]))

        # All domains as SANs, order preserved
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]),
            critical=False
        )

        csr = builder.sign(private_key, hashes.SHA256())
        return csr.public_bytes(serialization.Encoding.PEM)

    def issue(self, job: CertJob, nonce_directory: Union[str, Path]) -> IssuedCertificate:
        """Run the full ACME flow for one job and persist key and chain.

        Raises:
            IssuanceError: any failure; nothing is retried within the attempt
        """
        deadline = time.monotonic() + Config.ISSUANCE_TIMEOUT_SECONDS
        try:
            return self._issue(job, Path(nonce_directory), deadline)
        except IssuanceError:
            raise
        except errors.ValidationError as e:
            raise ValidationFailed(f"Authorization failed: {e}", job.name) from e
        except errors.TimeoutError as e:
            raise IssuanceTimeout(f"Timed out waiting for the CA: {e}", job.name) from e
        except errors.IssuanceError as e:
            raise IssuanceError(f"CA refused to issue the certificate: {e.error}", job.name) from e
        except (errors.Error, requests.exceptions.RequestException) as e:
            raise AcmeNetworkError(f"ACME request failed: {e}", job.name) from e
        except OSError as e:
            raise CertificateFileError(f"File operation failed: {e}", job.name) from e

    def _issue(self, job: CertJob, nonce_directory: Path, deadline: float) -> IssuedCertificate:
        directory_url = job.acme_directory_url
        logger.info(f"Generating certificate for domains: {job.domains} via {directory_url}")

        account_jwk = self._get_or_create_account_key(directory_url, job.email)
        acme_client = self._create_acme_client(directory_url, account_jwk)
        self._register_or_login(acme_client, job.email)

        cert_key, cert_key_pem = self._generate_rsa_key(self.cert_key_size)
        try:
            csr = self._create_csr(cert_key, job.domains)
        except ValueError as e:
            raise IssuanceError(f"Can't build a CSR for {job.domains}: {e}", job.name) from e
        order = acme_client.new_order(csr)

        authorizations = {
            authz.body.identifier.value: authz for authz in order.authorizations
        }
        for domain in job.domains:
            authz = authorizations.get(domain)
            if authz is None:
                raise ChallengeUnavailable(f"No authorization offered for {domain}", job.name)
            self._process_authorization(acme_client, authz, nonce_directory, deadline, job.name)

        # acme expects a naive local-time deadline
        remaining = max(deadline - time.monotonic(), 0)
        order = acme_client.poll_and_finalize(
            order, deadline=datetime.now() + timedelta(seconds=remaining)
        )
        fullchain_pem = order.fullchain_pem

        cert_obj = x509.load_pem_x509_certificates(fullchain_pem.encode('utf-8'))[0]
        fingerprint = f"sha256:{cert_obj.fingerprint(hashes.SHA256()).hex()}"

        self._save(job, fullchain_pem.encode('utf-8'), cert_key_pem)

        logger.info(f"Certificate generated successfully for {job.domains}")
        return IssuedCertificate(
            cert_name=job.name,
            domains=job.domains,
            email=job.email,
            acme_directory_url=directory_url,
            expires_at=cert_obj.not_valid_after_utc,
            issued_at=cert_obj.not_valid_before_utc,
            fingerprint=fingerprint,
            cert_path=job.cert_path,
            key_path=job.key_path,
        )

    def _save(self, job: CertJob, fullchain_pem: bytes, key_pem: bytes) -> None:
        """Persist the signed chain and its private key, replacing old files."""
        try:
            _atomic_write(job.cert_path, fullchain_pem, 0o644)
            _atomic_write(job.key_path, key_pem, 0o600)
        except OSError as e:
            raise CertificateFileError(
                f"Can't write {job.cert_path} / {job.key_path}: {e}", job.name
            ) from e
        logger.info(f"Saved certificate to {job.cert_path} and key to {job.key_path}")

    def _process_authorization(
        self,
        acme_client: client.ClientV2,
        authz: messages.AuthorizationResource,
        nonce_directory: Path,
        deadline: float,
        job_name: str,
    ) -> None:
        """Complete the HTTP-01 challenge of one authorization."""
        domain = authz.body.identifier.value

        if authz.body.status == messages.STATUS_VALID:
            logger.info(f"Authorization for {domain} is already valid")
            return

        http_challenge = None
        for challenge in authz.body.challenges:
            if isinstance(challenge.chall, challenges.HTTP01):
                http_challenge = challenge
                break

        if not http_challenge:
            raise ChallengeUnavailable(f"No HTTP-01 challenge found for {domain}", job_name)

        response, validation = http_challenge.chall.response_and_validation(acme_client.net.key)
        token = http_challenge.chall.encode('token')

        logger.info(f"Storing challenge token {token} for {domain}")
        logger.log(TRACE, f"Challenge validation for {domain}: {validation}")
        try:
            write_challenge(nonce_directory, token, validation)
        except OSError as e:
            raise CertificateFileError(f"Can't write challenge for {domain}: {e}", job_name) from e

        if read_challenge(nonce_directory, token) is None:
            raise CertificateFileError(f"Challenge for {domain} not readable after storage", job_name)

        try:
            logger.info(f"Answering ACME challenge at {http_challenge.uri}")
            acme_client.answer_challenge(http_challenge, response)
            self._wait_for_authorization(acme_client, authz, deadline, job_name)
        finally:
            remove_challenge(nonce_directory, token)

    def _wait_for_authorization(
        self,
        acme_client: client.ClientV2,
        authz: messages.AuthorizationResource,
        deadline: float,
        job_name: str,
    ) -> None:
        """Poll the authorization until the CA has validated or rejected it."""
        domain = authz.body.identifier.value
        max_attempts = Config.ACME_POLL_MAX_ATTEMPTS
        poll_interval = Config.ACME_POLL_INTERVAL_SECONDS

        for attempt in range(max_attempts):
            if time.monotonic() > deadline:
                raise IssuanceTimeout(f"Validation of {domain} exceeded the issuance deadline", job_name)

            authz, _ = acme_client.poll(authz)
            status = authz.body.status
            logger.info(f"Authorization status for {domain}: {status} (attempt {attempt + 1}/{max_attempts})")

            if status == messages.STATUS_VALID:
                logger.info(f"Authorization for {domain} validated successfully")
                return

            if status == messages.STATUS_INVALID:
                details = []
                for challenge in authz.body.challenges:
                    if challenge.error:
                        details.append(f"{challenge.chall.typ}: {challenge.error}")
                        logger.error(f"  Challenge {challenge.chall.typ} error: {challenge.error}")
                raise ValidationFailed(
                    f"Authorization for {domain} is invalid: {'; '.join(details) or 'no detail'}",
                    job_name,
                )

            if attempt < max_attempts - 1:
                time.sleep(poll_interval)

        raise IssuanceTimeout(f"Authorization validation for {domain} timed out", job_name)
