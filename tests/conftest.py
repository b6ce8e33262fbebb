# ===============================================================================
# PYTEST CONFIGURATION FOR THE BILLING PLATFORM
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- tests/api/ exercises the REST endpoints end to end
- Shared builders live in tests/billing/helpers.py

Run specific app tests: pytest tests/billing/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()

# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402
from django.contrib.auth import get_user_model  # noqa: E402

User = get_user_model()


@pytest.fixture
def user():
    """Create test user"""
    return User.objects.create_user(
        username='testuser',
        email='test@example.com',
        password='testpass123'
    )


@pytest.fixture
def admin_user():
    """Create billing admin (staff) user for tests"""
    return User.objects.create_user(
        username='billingadmin',
        email='admin@example.com',
        password='testpass123',
        is_staff=True,
    )


@pytest.fixture
def organization():
    """Create test organization"""
    from tests.billing.helpers import make_organization  # noqa: PLC0415

    return make_organization()


@pytest.fixture
def monthly_plan():
    """Create a monthly plan without trial"""
    from tests.billing.helpers import make_plan  # noqa: PLC0415

    return make_plan()
