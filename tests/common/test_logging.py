# ===============================================================================
# REQUEST TRACING AND RESULT TYPE TESTS
# ===============================================================================

import logging

from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase

from apps.common.logging import RequestIDFilter, clear_request_id, get_request_id, set_request_id
from apps.common.middleware import RequestIDMiddleware
from apps.common.types import Err, Ok


class RequestIDMiddlewareTestCase(SimpleTestCase):
    """Test request ID propagation"""

    def setUp(self) -> None:
        self.factory = RequestFactory()
        self.seen: list[str | None] = []

        def view(request):
            self.seen.append(get_request_id())
            return HttpResponse("ok")

        self.middleware = RequestIDMiddleware(view)

    def test_generates_request_id(self) -> None:
        response = self.middleware(self.factory.get("/api/billing/dashboard/"))

        self.assertTrue(response["X-Request-ID"])
        self.assertEqual(self.seen, [response["X-Request-ID"]])

    def test_honours_upstream_id(self) -> None:
        request = self.factory.get("/", HTTP_X_REQUEST_ID="edge-123")
        response = self.middleware(request)
        self.assertEqual(response["X-Request-ID"], "edge-123")
        self.assertEqual(request.META["REQUEST_ID"], "edge-123")

    def test_clears_id_after_request(self) -> None:
        self.middleware(self.factory.get("/"))
        self.assertIsNone(get_request_id())


class RequestIDFilterTestCase(SimpleTestCase):
    def make_record(self) -> logging.LogRecord:
        return logging.LogRecord("apps.billing", logging.INFO, __file__, 1, "sweep done", None, None)

    def tearDown(self) -> None:
        clear_request_id()

    def test_placeholder_outside_request(self) -> None:
        record = self.make_record()
        self.assertTrue(RequestIDFilter().filter(record))
        self.assertEqual(record.request_id, "-")

    def test_current_request_id(self) -> None:
        set_request_id("abc")
        record = self.make_record()
        RequestIDFilter().filter(record)
        self.assertEqual(record.request_id, "abc")


class ResultTypeTestCase(SimpleTestCase):
    """Test Ok/Err helpers used by the services"""

    def test_ok(self) -> None:
        result = Ok(2)
        self.assertTrue(result.is_ok())
        self.assertEqual(result.map(lambda value: value * 3).unwrap(), 6)
        self.assertEqual(result.and_then(lambda value: Err("nope")).unwrap_err(), "nope")

    def test_err(self) -> None:
        result = Err("Plan x not found")
        self.assertTrue(result.is_err())
        self.assertEqual(result.unwrap_or(5), 5)
        self.assertIs(result.map(lambda value: value), result)
        with self.assertRaises(ValueError):
            result.unwrap()
