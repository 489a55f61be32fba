import logging
from datetime import datetime
from app.core.firebase import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    """
    Operational event log backed by Firestore.

    Lifecycle operations, admin access overrides and provider sync outcomes
    are recorded here so drift between local and provider state can be
    found without reading application logs. Writes never raise.
    """

    def __init__(self, client=None):
        self.db = client if client is not None else get_firestore_client()
        self.events_collection = 'lifecycle_events'
        self.errors_collection = 'lifecycle_errors'

    def log_event(
        self,
        event_name: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        logger.debug(f"log_event: Entry - {event_name}, user: {user_id}")

        try:
            self.db.collection(self.events_collection).add({
                'event_name': event_name,
                'user_id': user_id,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
        except Exception as e:
            # Event logging must not break the lifecycle operation
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        action: str,
        error: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        try:
            self.db.collection(self.errors_collection).add({
                'action': action,
                'user_id': user_id,
                'error_message': error,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_success(
        self,
        action: str,
        user_id: str = None,
        parameters: dict = None
    ):
        self.log_event(
            event_name=f'{action}_success',
            user_id=user_id,
            parameters={'status': 'success', **(parameters or {})}
        )

    def log_failure(
        self,
        action: str,
        error: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        """Record a failed action as both an event and an error entry"""
        self.log_event(
            event_name=f'{action}_failure',
            user_id=user_id,
            parameters={'status': 'failure', 'error': error, **(parameters or {})}
        )
        self.log_error(action=action, error=error, user_id=user_id, parameters=parameters)
