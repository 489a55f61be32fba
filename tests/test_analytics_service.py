"""
Tests for the Firestore-backed lifecycle event log
"""

from unittest.mock import MagicMock

from app.services.analytics_service import AnalyticsService


class TestAnalyticsService:

    def test_log_success_writes_event(self):
        client = MagicMock()
        service = AnalyticsService(client=client)

        service.log_success(action='cancel_subscription', user_id='u1', parameters={'subscription_id': 's1'})

        client.collection.assert_called_once_with('lifecycle_events')
        payload = client.collection.return_value.add.call_args.args[0]
        assert payload['event_name'] == 'cancel_subscription_success'
        assert payload['parameters'] == {'status': 'success', 'subscription_id': 's1'}

    def test_log_failure_writes_event_and_error(self):
        client = MagicMock()
        service = AnalyticsService(client=client)

        service.log_failure(action='provider_cancel', error='timeout', user_id='u1')

        collections = [c.args[0] for c in client.collection.call_args_list]
        assert collections == ['lifecycle_events', 'lifecycle_errors']

    def test_firestore_errors_are_not_raised(self):
        client = MagicMock()
        client.collection.return_value.add.side_effect = RuntimeError("firestore unavailable")
        service = AnalyticsService(client=client)

        service.log_failure(action='provider_cancel', error='timeout')
