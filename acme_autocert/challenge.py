"""ACME HTTP-01 challenge files and the route that serves them."""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "/.well-known/acme-challenge"

# ACME tokens are base64url without padding
_TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]+$')


def valid_token(token: str) -> bool:
    return bool(token) and bool(_TOKEN_RE.match(token))


def challenge_directory(nonce_directory: Union[str, Path]) -> Path:
    return Path(nonce_directory) / ".well-known" / "acme-challenge"


def challenge_path(nonce_directory: Union[str, Path], token: str) -> Path:
    """Location of the key authorization file for a token."""
    if not valid_token(token):
        raise ValueError(f"Invalid challenge token: {token!r}")
    return challenge_directory(nonce_directory) / token


def write_challenge(nonce_directory: Union[str, Path], token: str, validation: str) -> Path:
    """Write a key authorization and make it durable before returning.

    The CA may fetch the token as soon as the challenge is answered, so the
    file is fsynced and then renamed into place.
    """
    path = challenge_path(nonce_directory, token)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(validation)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.debug(f"Stored challenge token {token} at {path}")
    return path


def read_challenge(nonce_directory: Union[str, Path], token: str) -> Optional[bytes]:
    """Return the stored key authorization for a token, if any."""
    if not valid_token(token):
        return None
    try:
        return challenge_path(nonce_directory, token).read_bytes()
    except (FileNotFoundError, IsADirectoryError):
        return None


def remove_challenge(nonce_directory: Union[str, Path], token: str) -> bool:
    """Delete a challenge file once its authorization is settled."""
    if not valid_token(token):
        return False
    try:
        challenge_path(nonce_directory, token).unlink()
        return True
    except FileNotFoundError:
        return False


def create_challenge_router(nonce_directory: Union[str, Path]) -> APIRouter:
    """Router serving HTTP-01 proofs out of the nonce directory."""
    router = APIRouter()
    nonce_directory = Path(nonce_directory)

    @router.get(CHALLENGE_PREFIX + "/{token}", response_class=PlainTextResponse)
    def acme_challenge(request: Request, token: str):
        """ACME HTTP-01 challenge endpoint."""
        logger.info(f"Challenge endpoint called for token: {token} from {request.client}")

        authorization = read_challenge(nonce_directory, token)
        if authorization is None:
            logger.warning(f"Challenge not found for token: {token}")
            raise HTTPException(status_code=404, detail="Challenge not found")

        return PlainTextResponse(content=authorization)

    return router
