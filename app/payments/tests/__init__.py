"""
Tests for payments app.

This package contains test modules for:
- test_models.py, test_state_transitions.py: Contract, payout and subscription models
- test_escrow_service.py, test_settlement_service.py, test_subscription_service.py: Services
- test_settlement_scheduler.py: Daily trigger window and run lease
- test_webhooks.py, test_tasks.py: Gateway webhooks and Celery tasks
- test_views.py: API endpoint tests
- test_integration.py: Contract-to-payout journey

Usage:
    pytest app/payments/tests/
    pytest app/payments/tests/test_views.py -m integration
"""
