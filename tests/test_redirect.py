"""
Redirect endpoint behavior tests.

ASGITransport runs the response's background tasks before returning, so
click rows, counters and queue jobs can be checked right after a request.
"""

from datetime import timedelta

import jwt
import pytest
from sqlalchemy.exc import OperationalError

from linkpulse.api import endpoints
from linkpulse.db.models import (
    ClickEvent,
    DynamicLinkClickEvent,
    Link,
    RedirectType,
    TrackingSession,
    UserDevice,
)
from linkpulse.db.session import get_session
from linkpulse.main import app
from linkpulse.queue.models import ANALYTICS_TOPIC
from linkpulse.services.background_tasks import process_click_background
from linkpulse.services.click_recorder import ClickRecorder
from linkpulse.services.device_service import DeviceService
from linkpulse.services.link_lookup import LinkLookupService
from tests.factories import (
    ANDROID_UA,
    CHROME_DESKTOP_UA,
    IPHONE_UA,
    count_rows,
    create_dynamic_link,
    create_link,
    create_user,
    fetch_all,
)

BROWSER_HEADERS = {
    "User-Agent": CHROME_DESKTOP_UA,
    "Accept-Language": "en-US,en;q=0.9",
    "X-Screen-Width": "1920",
    "X-Screen-Height": "1080",
}


class TestRedirectDecision:
    """Status codes and targets."""

    @pytest.mark.asyncio
    async def test_temporary_redirect(self, client, db):
        await create_link(db, alias="promo", original_url="https://example.com/sale")

        response = await client.get("/promo", headers=BROWSER_HEADERS)

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/sale"

    @pytest.mark.asyncio
    async def test_permanent_redirect(self, client, db):
        await create_link(db, alias="guide", original_url="https://docs.example.com", redirect_type=RedirectType.PERMANENT.value)

        response = await client.get("/guide", headers=BROWSER_HEADERS)

        assert response.status_code == 301
        assert response.headers["location"] == "https://docs.example.com"

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, client, db):
        await create_link(db, alias="same")

        first = await client.get("/same")
        second = await client.get("/same")

        assert first.status_code == second.status_code == 302
        assert first.headers["location"] == second.headers["location"]

    @pytest.mark.asyncio
    async def test_unknown_alias_is_404(self, client):
        response = await client.get("/nothing-here")

        assert response.status_code == 404
        assert response.json() == {"detail": "Link not found or expired"}

    @pytest.mark.asyncio
    async def test_malformed_alias_is_404(self, client):
        response = await client.get("/bad%20alias!")

        assert response.status_code == 404
        assert response.json() == {"detail": "Link not found or expired"}

    @pytest.mark.asyncio
    async def test_inactive_link_is_404(self, client, db, session_maker):
        await create_link(db, alias="off", is_active=False)

        response = await client.get("/off")

        assert response.status_code == 404
        assert response.json() == {"detail": "Link not found or expired"}
        assert await count_rows(session_maker, ClickEvent) == 0

    @pytest.mark.asyncio
    async def test_expired_link_is_404(self, client, db, session_maker):
        await create_link(db, alias="old", expires_in=timedelta(minutes=-1))

        response = await client.get("/old")

        assert response.status_code == 404
        assert response.json() == {"detail": "Link not found or expired"}
        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 0

    @pytest.mark.asyncio
    async def test_link_with_future_expiry_redirects(self, client, db):
        await create_link(db, alias="soon", expires_in=timedelta(days=1))

        response = await client.get("/soon")

        assert response.status_code == 302


class TestDynamicLinks:
    """Platform rules."""

    RULES = [
        {"platform": "ios", "url": "https://apps.apple.com/app/id1", "minimum_version": "16.0"},
        {"platform": "android", "url": "https://play.google.com/store/apps/details?id=x"},
    ]

    @pytest.mark.asyncio
    async def test_ios_rule(self, client, db):
        await create_dynamic_link(db, alias="get", rules=self.RULES)

        response = await client.get("/get", headers={"User-Agent": IPHONE_UA})

        assert response.status_code == 302
        assert response.headers["location"] == "https://apps.apple.com/app/id1"

    @pytest.mark.asyncio
    async def test_ios_below_minimum_version_falls_back(self, client, db):
        rules = [dict(self.RULES[0], minimum_version="18.0"), self.RULES[1]]
        await create_dynamic_link(db, alias="get", default_url="https://example.com/app", rules=rules)

        response = await client.get("/get", headers={"User-Agent": IPHONE_UA})

        assert response.headers["location"] == "https://example.com/app"

    @pytest.mark.asyncio
    async def test_android_rule(self, client, db):
        await create_dynamic_link(db, alias="get", rules=self.RULES)

        response = await client.get("/get", headers={"User-Agent": ANDROID_UA})

        assert response.headers["location"] == "https://play.google.com/store/apps/details?id=x"

    @pytest.mark.asyncio
    async def test_desktop_gets_default(self, client, db, session_maker):
        await create_dynamic_link(db, alias="get", default_url="https://example.com/app", rules=self.RULES)

        response = await client.get("/get", headers={"User-Agent": CHROME_DESKTOP_UA})

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/app"
        assert await count_rows(session_maker, DynamicLinkClickEvent) == 1
        assert await count_rows(session_maker, ClickEvent) == 0


class TestClickTracking:
    """Side effects of a successful redirect."""

    @pytest.mark.asyncio
    async def test_request_transaction_released_before_tracking(self, client, db, session_maker, monkeypatch):
        """Click writes must not wait on the request session, however late it is closed."""
        await create_link(db, alias="promo")
        request_sessions = []

        async def recording_session():
            async with session_maker() as session:
                request_sessions.append(session)
                yield session

        in_transaction = []

        async def checked_process(context, decision):
            in_transaction.append(request_sessions[0].in_transaction())
            await process_click_background(context, decision)

        monkeypatch.setattr(endpoints, "process_click_background", checked_process)
        app.dependency_overrides[get_session] = recording_session
        try:
            response = await client.get("/promo", headers=BROWSER_HEADERS)
        finally:
            app.dependency_overrides.pop(get_session, None)

        assert response.status_code == 302
        assert in_transaction == [False]
        assert await count_rows(session_maker, ClickEvent) == 1
        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 1

    @pytest.mark.asyncio
    async def test_click_recorded_with_device_and_session(self, client, db, session_maker):
        link = await create_link(db, alias="promo")

        response = await client.get(
            "/promo?utm_source=newsletter&utm_campaign=spring&ref=a,b",
            headers=dict(BROWSER_HEADERS, Referer="https://www.news.example.org/post/1"),
        )

        assert response.status_code == 302
        clicks = await fetch_all(session_maker, ClickEvent)
        assert len(clicks) == 1
        click = clicks[0]
        assert click.link_id == link.id
        assert click.status_code == 302
        assert click.ip_address == "203.0.113.10"
        assert click.browser == "Chrome"
        assert click.device_type == "desktop"
        assert click.utm_source == "newsletter"
        assert click.utm_campaign == "spring"
        assert click.utm_medium is None
        assert click.referrer_domain == "news.example.org"
        assert click.query_params["ref"] == ["a", "b"]
        assert click.x_screen_width == 1920
        assert click.user_device_id is not None
        assert click.session_id is not None

        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 1

    @pytest.mark.asyncio
    async def test_repeat_clicks_share_device_and_session(self, client, db, session_maker):
        await create_link(db, alias="promo")

        for _ in range(3):
            await client.get("/promo", headers=BROWSER_HEADERS)

        clicks = await fetch_all(session_maker, ClickEvent)
        assert len(clicks) == 3
        assert len({click.user_device_id for click in clicks}) == 1
        assert len({click.session_id for click in clicks}) == 1
        assert await count_rows(session_maker, UserDevice) == 1
        sessions = await fetch_all(session_maker, TrackingSession)
        assert len(sessions) == 1
        assert sessions[0].event_count == 3

        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 3

    @pytest.mark.asyncio
    async def test_geo_header_is_recorded(self, client, db, session_maker):
        await create_link(db, alias="promo")
        geo = '{"country": "DE", "city": "Berlin", "latitude": 52.52, "longitude": 13.405}'

        await client.get("/promo", headers=dict(BROWSER_HEADERS, **{"X-Geo-Data": geo}))

        click = (await fetch_all(session_maker, ClickEvent))[0]
        assert click.geo_country == "de"
        assert click.geo_city == "Berlin"

    @pytest.mark.asyncio
    async def test_authenticated_click_is_attributed(self, client, db, session_maker):
        user = await create_user(db, email="visitor@example.com")
        await create_link(db, alias="promo")
        token = jwt.encode({"sub": user.id}, "test-secret", algorithm="HS256")

        await client.get("/promo", headers=dict(BROWSER_HEADERS, Authorization=f"Bearer {token}"))

        click = (await fetch_all(session_maker, ClickEvent))[0]
        assert click.user_id == user.id
        device = (await fetch_all(session_maker, UserDevice))[0]
        assert device.user_id == user.id

    @pytest.mark.asyncio
    async def test_invalid_token_tracks_anonymously(self, client, db, session_maker):
        await create_link(db, alias="promo")

        response = await client.get("/promo", headers=dict(BROWSER_HEADERS, Authorization="Bearer not-a-jwt"))

        assert response.status_code == 302
        click = (await fetch_all(session_maker, ClickEvent))[0]
        assert click.user_id is None

    @pytest.mark.asyncio
    async def test_analytics_job_published(self, client, db, event_queue):
        link = await create_link(db, alias="promo")

        await client.get("/promo", headers=BROWSER_HEADERS)

        jobs = await event_queue.consume(ANALYTICS_TOPIC, batch_size=10)
        assert len(jobs) == 1
        assert jobs[0].payload["event"] == "link.clicked"
        assert jobs[0].payload["link_id"] == link.id
        assert jobs[0].payload["click"]["event_id"] is not None
        assert jobs[0].max_attempts == 3


class TestFailureIsolation:
    """Analytics failures never reach the visitor; lookup failures write nothing."""

    @pytest.mark.asyncio
    async def test_device_failure_still_redirects_and_records_click(self, client, db, session_maker, monkeypatch):
        await create_link(db, alias="promo", original_url="https://example.com/sale")

        async def broken_upsert(self, *args, **kwargs):
            raise OperationalError("INSERT INTO user_devices ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(DeviceService, "upsert_device", broken_upsert)

        response = await client.get("/promo", headers=BROWSER_HEADERS)

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/sale"
        clicks = await fetch_all(session_maker, ClickEvent)
        assert len(clicks) == 1
        assert clicks[0].user_device_id is None
        assert clicks[0].session_id is None
        assert clicks[0].browser == "Chrome"
        assert await count_rows(session_maker, UserDevice) == 0
        assert await count_rows(session_maker, TrackingSession) == 0

    @pytest.mark.asyncio
    async def test_tracking_failure_still_redirects(self, client, db, session_maker, monkeypatch):
        await create_link(db, alias="promo", original_url="https://example.com/sale")

        async def broken_insert(self, *args, **kwargs):
            raise OperationalError("INSERT INTO click_events ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(ClickRecorder, "record_click", broken_insert)

        response = await client.get("/promo", headers=BROWSER_HEADERS)

        assert response.status_code == 302
        # The unit of work rolled back as a whole
        assert await count_rows(session_maker, ClickEvent) == 0
        assert await count_rows(session_maker, UserDevice) == 0
        assert await count_rows(session_maker, TrackingSession) == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_is_500_without_side_effects(self, client, db, session_maker, event_queue, monkeypatch):
        await create_link(db, alias="promo")

        async def broken_lookup(self, alias):
            raise OperationalError("SELECT ...", {}, Exception("database is locked"))

        monkeypatch.setattr(LinkLookupService, "find_by_alias", broken_lookup)

        response = await client.get("/promo", headers=BROWSER_HEADERS)

        assert response.status_code == 500
        assert response.json() == {"detail": "Error processing redirect"}
        assert await count_rows(session_maker, ClickEvent) == 0
        assert await count_rows(session_maker, UserDevice) == 0
        assert await event_queue.get_queue_length(ANALYTICS_TOPIC) == 0
        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 0

    @pytest.mark.asyncio
    async def test_counter_failure_does_not_block_event(self, client, db, session_maker, monkeypatch):
        await create_link(db, alias="promo")

        async def broken_increment(self, link_ref):
            raise OperationalError("UPDATE ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(LinkLookupService, "increment_click_counter", broken_increment)

        response = await client.get("/promo", headers=BROWSER_HEADERS)

        assert response.status_code == 302
        assert await count_rows(session_maker, ClickEvent) == 1
        links = await fetch_all(session_maker, Link)
        assert links[0].click_count == 0
