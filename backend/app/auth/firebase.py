"""
Firebase Admin SDK setup and ID-token verification.
Firebase is the identity provider; this service only checks tokens.
"""
import json
import os
import logging
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials, exceptions as firebase_exceptions

from app.config import settings

logger = logging.getLogger(__name__)

_firebase_app: Optional[firebase_admin.App] = None


def _load_credentials(value: Optional[str]) -> credentials.Base:
    """
    FIREBASE_CREDENTIALS_JSON may be a service account file path or the JSON
    document itself. Without it, Application Default Credentials are used.
    """
    if not value:
        return credentials.ApplicationDefault()

    if os.path.exists(value):
        logger.info(f"Loading Firebase credentials from file: {value}")
        return credentials.Certificate(value)

    try:
        service_account = json.loads(value)
    except ValueError:
        raise ValueError("FIREBASE_CREDENTIALS_JSON is neither an existing file nor valid JSON")
    logger.info("Loading Firebase credentials from JSON string")
    return credentials.Certificate(service_account)


def initialize_firebase() -> None:
    """Initialize the Admin SDK once. Called from the API lifespan."""
    global _firebase_app

    if _firebase_app is not None:
        return

    if not settings.firebase_project_id:
        raise ValueError("FIREBASE_PROJECT_ID must be set")

    _firebase_app = firebase_admin.initialize_app(
        _load_credentials(settings.firebase_credentials_json),
        {"projectId": settings.firebase_project_id},
    )
    logger.info(f"Firebase initialized for project {settings.firebase_project_id}")


def verify_firebase_token(token: str) -> Dict[str, Any]:
    """
    Verify a Firebase ID token (signature, expiry, issuer, audience).

    Returns:
        Decoded claims, including uid and email

    Raises:
        ValueError: If the token is malformed, invalid, expired or revoked,
            or Firebase is not initialized
    """
    if _firebase_app is None:
        raise ValueError("Authentication is not configured")

    try:
        return auth.verify_id_token(token, app=_firebase_app)
    except firebase_exceptions.FirebaseError as e:
        raise ValueError(f"Token verification failed: {e}") from e
