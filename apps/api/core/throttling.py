# ===============================================================================
# API THROTTLING CLASSES 🚦
# ===============================================================================

from rest_framework.throttling import AnonRateThrottle, UserRateThrottle


class StandardAPIThrottle(UserRateThrottle):
    """Standard rate limiting for admin billing endpoints"""
    rate = '1000/hour'


class MutationAPIThrottle(UserRateThrottle):
    """Tighter limit for endpoints that move money or change subscription state"""
    rate = '60/min'


class WebhookThrottle(AnonRateThrottle):
    """Per-IP limit for unauthenticated provider webhooks"""
    rate = '60/min'
