import firebase_admin
from firebase_admin import credentials, auth, firestore
from app.core.config import settings
from app.core.exceptions import UnauthenticatedError
import logging

logger = logging.getLogger(__name__)


def init_firebase():
    """Initialize the Firebase Admin app used for ID tokens and analytics"""
    logger.info("init_firebase: Entry")

    if firebase_admin._apps:
        logger.info("init_firebase: Already initialized")
        return

    try:
        cred = credentials.Certificate(settings.firebase_credentials_path)
        firebase_admin.initialize_app(cred, {
            'projectId': settings.firebase_project_id,
        })
        logger.info(f"init_firebase: Success - project: {settings.firebase_project_id}")
    except (ValueError, OSError) as e:
        logger.error(f"init_firebase: Failure - {e}")
        raise


def verify_firebase_token(token: str) -> dict:
    """
    Verify a Firebase ID token and return its claims.

    Raises:
        UnauthenticatedError: token is malformed, expired, revoked, or
            belongs to a disabled account
    """
    logger.info("verify_firebase_token: Entry")

    try:
        decoded_token = auth.verify_id_token(token, check_revoked=settings.firebase_check_revoked)
    except (auth.ExpiredIdTokenError, auth.RevokedIdTokenError, auth.UserDisabledError) as e:
        logger.warning(f"verify_firebase_token: Rejected - {e}")
        raise UnauthenticatedError(str(e), context={'reason': type(e).__name__}) from e
    except (auth.InvalidIdTokenError, ValueError) as e:
        logger.error(f"verify_firebase_token: Failure - {e}")
        raise UnauthenticatedError("Invalid ID token", context={'reason': type(e).__name__}) from e

    if not decoded_token.get('uid'):
        raise UnauthenticatedError("ID token has no uid")

    logger.info(f"verify_firebase_token: Success - {decoded_token.get('uid')}")
    return decoded_token


def get_firestore_client():
    """Firestore client backing AnalyticsService"""
    return firestore.client()
