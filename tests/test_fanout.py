"""
Tests for event fan-out, webhook signing/delivery and the webhook worker.
"""

import hashlib
import hmac
import json

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from linkpulse.core.exceptions import WebhookDeliveryError
from linkpulse.db.models import LinkKind, WebhookEndpoint
from linkpulse.queue.models import ANALYTICS_TOPIC, WEBHOOKS_TOPIC, QueueMessage
from linkpulse.queue.strategies import InMemoryQueue
from linkpulse.services.context import RequestContext
from linkpulse.services.fanout import EventFanout, build_click_payload
from linkpulse.services.link_lookup import LinkRef
from linkpulse.services.redirect_service import RedirectDecision
from linkpulse.services.webhooks import SIGNATURE_HEADER, WebhookDispatcher, sign_payload
from linkpulse.workers.webhook_worker import WebhookWorker, retry_delay
from tests.factories import create_user, create_webhook_endpoint, fetch_all


def make_decision(owner_id=None) -> RedirectDecision:
    return RedirectDecision(
        target="https://example.com/sale",
        status_code=302,
        link_ref=LinkRef(kind=LinkKind.STANDARD, id="link-1", alias="promo", owner_id=owner_id),
    )


def make_context() -> RequestContext:
    return RequestContext(
        ip_address="192.0.2.1",
        headers={"userAgent": "Mozilla/5.0", "referer": "https://news.example.org/"},
        utm={"utm_source": "newsletter", "utm_medium": None},
    )


class RecordingTransport:
    """httpx MockTransport handler that records requests and replies with fixed statuses."""

    def __init__(self, *statuses: int):
        self.statuses = list(statuses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status)


def make_dispatcher(handler) -> WebhookDispatcher:
    return WebhookDispatcher(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestClickPayload:
    def test_payload_shape(self):
        payload = build_click_payload(make_decision(owner_id="user-1"), make_context(), event_id="evt-1")

        assert payload["event"] == "link.clicked"
        assert payload["link_id"] == "link-1"
        assert payload["link_kind"] == "link"
        assert payload["alias"] == "promo"
        assert payload["owner_id"] == "user-1"
        assert payload["click"]["event_id"] == "evt-1"
        assert payload["click"]["utm"] == {"utm_source": "newsletter"}
        json.dumps(payload)


class TestWebhookDispatcher:
    """Signed delivery."""

    def test_signature_is_hmac_sha256_of_compact_json(self):
        payload = {"b": 1, "a": "x"}
        expected = hmac.new(b"secret", b'{"b":1,"a":"x"}', hashlib.sha256).hexdigest()
        assert sign_payload("secret", payload) == expected

    @pytest.mark.asyncio
    async def test_deliver_posts_signed_body(self):
        transport = RecordingTransport(200)
        dispatcher = make_dispatcher(transport)
        payload = {"alias": "promo"}

        status = await dispatcher.deliver("https://hooks.example.com/a", "whsec", "link.clicked", payload)
        await dispatcher.aclose()

        assert status == 200
        request = transport.requests[0]
        body = json.loads(request.content)
        assert body["event"] == "link.clicked"
        assert body["payload"] == payload
        assert "timestamp" in body
        assert request.headers[SIGNATURE_HEADER] == sign_payload("whsec", payload)
        assert request.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self):
        dispatcher = make_dispatcher(RecordingTransport(503))

        with pytest.raises(WebhookDeliveryError) as exc_info:
            await dispatcher.deliver("https://hooks.example.com/a", "whsec", "link.clicked", {})
        await dispatcher.aclose()

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = make_dispatcher(refuse)

        with pytest.raises(WebhookDeliveryError):
            await dispatcher.deliver("https://hooks.example.com/a", "whsec", "link.clicked", {})
        await dispatcher.aclose()


class TestEventFanout:
    """Queue jobs per click."""

    @pytest.mark.asyncio
    async def test_anonymous_link_only_publishes_analytics(self, db):
        queue = InMemoryQueue()

        published = await EventFanout(db, queue).publish_click(make_decision(), make_context(), "evt-1")

        assert published == 1
        assert await queue.get_queue_length(ANALYTICS_TOPIC) == 1
        assert await queue.get_queue_length(WEBHOOKS_TOPIC) == 0

    @pytest.mark.asyncio
    async def test_one_webhook_job_per_subscribed_active_endpoint(self, db):
        owner = await create_user(db)
        other = await create_user(db, email="other@example.com")
        subscribed = await create_webhook_endpoint(db, owner.id, url="https://hooks.example.com/1", secret="s1")
        await create_webhook_endpoint(db, owner.id, url="https://hooks.example.com/2", secret="s2", is_active=False)
        await create_webhook_endpoint(db, owner.id, url="https://hooks.example.com/3", secret="s3", events=["link.created"])
        await create_webhook_endpoint(db, other.id, url="https://hooks.example.com/4", secret="s4")
        queue = InMemoryQueue()

        published = await EventFanout(db, queue, direct_delivery=False).publish_click(
            make_decision(owner_id=owner.id), make_context(), "evt-1"
        )

        assert published == 2
        jobs = await queue.consume(WEBHOOKS_TOPIC, batch_size=10)
        assert len(jobs) == 1
        assert jobs[0].payload["endpoint_id"] == subscribed.id
        assert jobs[0].payload["payload"]["link_id"] == "link-1"
        assert "secret" not in jobs[0].payload
        assert jobs[0].attempts == 0
        assert jobs[0].max_attempts == 5

    @pytest.mark.asyncio
    async def test_direct_delivery_success_skips_queue(self, db):
        owner = await create_user(db)
        await create_webhook_endpoint(db, owner.id)
        transport = RecordingTransport(200)
        queue = InMemoryQueue()

        await EventFanout(db, queue, dispatcher=make_dispatcher(transport), direct_delivery=True).publish_click(
            make_decision(owner_id=owner.id), make_context()
        )

        assert len(transport.requests) == 1
        assert await queue.get_queue_length(WEBHOOKS_TOPIC) == 0

    @pytest.mark.asyncio
    async def test_direct_delivery_failure_is_queued_for_retry(self, db, session_maker):
        owner = await create_user(db)
        endpoint = await create_webhook_endpoint(db, owner.id)
        queue = InMemoryQueue()

        await EventFanout(db, queue, dispatcher=make_dispatcher(RecordingTransport(500)), direct_delivery=True).publish_click(
            make_decision(owner_id=owner.id), make_context()
        )
        await db.commit()

        jobs = await queue.consume(WEBHOOKS_TOPIC)
        assert jobs[0].attempts == 1
        stored = (await fetch_all(session_maker, WebhookEndpoint, WebhookEndpoint.id == endpoint.id))[0]
        assert stored.failed_attempts == 1
        assert stored.last_failed_at is not None

    @pytest.mark.asyncio
    async def test_queue_failure_is_contained(self, db):
        class BrokenQueue(InMemoryQueue):
            async def publish(self, queue_name, message):
                raise ConnectionError("broker down")

        published = await EventFanout(db, BrokenQueue()).publish_click(make_decision(), make_context())

        assert published == 0


class TestWebhookWorker:
    """Retry policy."""

    def test_backoff_doubles(self):
        assert [retry_delay(attempt, 2.0) for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    @pytest.mark.asyncio
    async def test_successful_delivery(self, db, session_maker):
        owner = await create_user(db)
        endpoint = await create_webhook_endpoint(db, owner.id)
        queue = InMemoryQueue()
        await queue.publish(WEBHOOKS_TOPIC, QueueMessage(
            topic=WEBHOOKS_TOPIC,
            payload={"endpoint_id": endpoint.id, "url": endpoint.url, "event": "link.clicked", "payload": {"a": 1}},
            max_attempts=5,
        ))
        transport = RecordingTransport(200)
        worker = WebhookWorker(queue, make_dispatcher(transport), session_factory=session_maker)

        assert await worker.run_once() == 1

        assert worker.delivered_count == 1
        assert transport.requests[0].headers[SIGNATURE_HEADER] == sign_payload(endpoint.secret, {"a": 1})

    @pytest.mark.asyncio
    async def test_failures_retry_then_drop(self, db, session_maker):
        owner = await create_user(db)
        endpoint = await create_webhook_endpoint(db, owner.id)
        queue = InMemoryQueue()
        await queue.publish(WEBHOOKS_TOPIC, QueueMessage(
            topic=WEBHOOKS_TOPIC,
            payload={"endpoint_id": endpoint.id, "url": endpoint.url, "event": "link.clicked", "payload": {}},
            max_attempts=3,
        ))
        transport = RecordingTransport(500)
        worker = WebhookWorker(queue, make_dispatcher(transport), session_factory=session_maker, backoff_base_seconds=0)

        for _ in range(3):
            assert await worker.run_once() == 1
            await worker.drain()

        assert await worker.run_once() == 0
        assert len(transport.requests) == 3
        assert worker.dropped_count == 1
        stored = (await fetch_all(session_maker, WebhookEndpoint))[0]
        assert stored.failed_attempts == 3

    @pytest.mark.asyncio
    async def test_inactive_endpoint_is_skipped(self, db, session_maker):
        owner = await create_user(db)
        endpoint = await create_webhook_endpoint(db, owner.id, is_active=False)
        queue = InMemoryQueue()
        await queue.publish(WEBHOOKS_TOPIC, QueueMessage(
            topic=WEBHOOKS_TOPIC,
            payload={"endpoint_id": endpoint.id, "event": "link.clicked", "payload": {}},
        ))
        transport = RecordingTransport(200)
        worker = WebhookWorker(queue, make_dispatcher(transport), session_factory=session_maker)

        await worker.run_once()

        assert transport.requests == []
        assert worker.dropped_count == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_acks_and_retries_whole_batch(self):
        class AckRecordingQueue(InMemoryQueue):
            def __init__(self):
                super().__init__()
                self.acked = []

            async def ack(self, queue_name, message_ids):
                self.acked.extend(message_ids)
                return True

        class UnavailableSession:
            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc_info):
                return False

            async def get(self, model, ident):
                raise OperationalError("SELECT webhook_endpoints ...", {}, Exception("database is locked"))

        queue = AckRecordingQueue()
        for n in range(2):
            await queue.publish(WEBHOOKS_TOPIC, QueueMessage(
                topic=WEBHOOKS_TOPIC,
                payload={"endpoint_id": f"endpoint-{n}", "event": "link.clicked", "payload": {}},
                max_attempts=3,
            ))
        transport = RecordingTransport(200)
        worker = WebhookWorker(
            queue,
            make_dispatcher(transport),
            session_factory=UnavailableSession,
            backoff_base_seconds=0,
        )

        assert await worker.run_once() == 2
        await worker.drain()

        assert queue.acked == ["1-0", "2-0"]
        retried = await queue.consume(WEBHOOKS_TOPIC, batch_size=10)
        assert sorted(message.payload["endpoint_id"] for message in retried) == ["endpoint-0", "endpoint-1"]
        assert all(message.attempts == 1 for message in retried)
        assert transport.requests == []
