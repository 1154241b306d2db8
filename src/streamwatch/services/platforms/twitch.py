"""
Twitch Helix API client and poller.

Authentication uses the client credentials flow; the app access token is
cached until shortly before it expires and refreshed once on a 401.
A stream that disappears from ``helix/streams`` is only reported as ended
after it has been absent for the offline grace period, because the API
briefly drops live streams during ingest hiccups.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout

from ...lib.config import PlatformConfig
from ...lib.errors import ApiResponseError, PollerStateError
from ...lib.retry import RetryPolicyEngine
from ...models import LiveIndicator, RawObservation
from ..poller import PlatformPoller, chunked
from ..reconciler import StateReconciler
from ..repository import Repository
from ..subscriptions import PushSubscriptionBackend, SubscriptionLifecycleManager
from ..tracking import TrackingRegistry
from .youtube import parse_timestamp

logger = logging.getLogger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
API_BASE_URL = "https://api.twitch.tv/helix"
EVENTSUB_URL = f"{API_BASE_URL}/eventsub/subscriptions"
MAX_LOGINS_PER_CALL = 100

EVENTSUB_TOPICS = {
    "stream.online": "1",
    "stream.offline": "1",
    "channel.update": "2",
}


@dataclass
class AppToken:
    """App access token returned by the client credentials flow."""
    access_token: str
    expires_at: datetime

    def is_expired(self, margin_seconds: float = 300.0) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at - timedelta(seconds=margin_seconds)


class TwitchApiClient:
    """Helix client with app token management."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        retry_engine: RetryPolicyEngine,
        session: Optional[ClientSession] = None,
        token_url: str = TOKEN_URL,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = 30.0
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.retry_engine = retry_engine
        self.token_url = token_url
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

        self._session = session
        self._owns_session = session is None
        self._token: Optional[AppToken] = None
        self._token_lock = asyncio.Lock()
        self._user_ids: Dict[str, str] = {}
        self._closed = False
        self.request_count = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        self._closed = False
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout_seconds))

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._token = None

    async def get_access_token(self) -> str:
        """Valid app access token, requesting a new one when needed."""
        async with self._token_lock:
            if self._token and not self._token.is_expired():
                return self._token.access_token

            logger.info("Requesting Twitch app access token")
            self._token = await self.retry_engine.execute("oauth.token", self._request_token)
            return self._token.access_token

    async def _request_token(self) -> AppToken:
        self._check_open("oauth.token")
        if self._session is None:
            await self.start()

        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        async with self._session.post(self.token_url, data=data) as response:
            if response.status != 200:
                text = await response.text()
                raise ApiResponseError(
                    f"Twitch token request failed: HTTP {response.status}",
                    status=response.status,
                    body=text[:500],
                )
            payload = await response.json()

        expires_in = int(payload.get("expires_in", 3600))
        return AppToken(
            access_token=payload["access_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def invalidate_token(self) -> None:
        self._token = None

    async def auth_headers(self) -> Dict[str, str]:
        token = await self.get_access_token()
        return {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {token}",
        }

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise PollerStateError(f"Twitch client is closed, refusing {operation}")

    async def _get_once(self, path: str, params: List[tuple]) -> Dict[str, Any]:
        self._check_open(path)
        if self._session is None:
            await self.start()

        for attempt in range(2):
            headers = await self.auth_headers()
            async with self._session.get(f"{self.base_url}/{path}", params=params, headers=headers) as response:
                self.request_count += 1

                if response.status == 200:
                    return await response.json()

                if response.status == 401 and attempt == 0:
                    logger.info("Twitch token rejected, refreshing")
                    self.invalidate_token()
                    continue

                text = await response.text()
                retry_after = None
                reset = response.headers.get("Ratelimit-Reset")
                if response.status == 429 and reset and reset.isdigit():
                    retry_after = max(1.0, int(reset) - datetime.now(timezone.utc).timestamp())

                raise ApiResponseError(
                    f"Twitch {path} failed: HTTP {response.status}",
                    status=response.status,
                    retry_after=retry_after,
                    body=text[:500],
                )

        raise ApiResponseError(f"Twitch {path} failed: token refused twice", status=401)

    async def request(self, path: str, params: List[tuple]) -> Dict[str, Any]:
        return await self.retry_engine.execute(path, lambda: self._get_once(path, params))

    async def get_streams(self, logins: List[str]) -> List[Dict[str, Any]]:
        if not logins:
            return []
        params = [("user_login", login) for login in logins[:MAX_LOGINS_PER_CALL]]
        params.append(("first", str(MAX_LOGINS_PER_CALL)))
        data = await self.request("streams", params)
        return data.get("data", [])

    async def get_users(self, logins: List[str]) -> List[Dict[str, Any]]:
        if not logins:
            return []
        params = [("login", login) for login in logins[:MAX_LOGINS_PER_CALL]]
        data = await self.request("users", params)
        users = data.get("data", [])
        for user in users:
            self._user_ids[user["login"].lower()] = user["id"]
        return users

    async def get_user_id(self, login: str) -> str:
        login = login.lower()
        if login not in self._user_ids:
            await self.get_users([login])
        if login not in self._user_ids:
            raise ApiResponseError(f"Twitch user {login} not found", status=404)
        return self._user_ids[login]

    async def get_channels(self, broadcaster_ids: List[str]) -> List[Dict[str, Any]]:
        if not broadcaster_ids:
            return []
        params = [("broadcaster_id", bid) for bid in broadcaster_ids[:MAX_LOGINS_PER_CALL]]
        data = await self.request("channels", params)
        return data.get("data", [])

    async def eventsub_condition(self, login: str, topic: str) -> Dict[str, str]:
        return {"broadcaster_user_id": await self.get_user_id(login)}


@dataclass
class LiveStream:
    """A stream last seen live, with the time it went missing if it did."""
    stream_id: str
    started_at: Optional[datetime] = None
    missing_since: Optional[datetime] = None


def observation_from_stream(stream: Dict[str, Any]) -> RawObservation:
    """Build an observation from one ``helix/streams`` item."""
    return RawObservation(
        platform="twitch",
        channel_key=stream["user_login"].lower(),
        external_id=stream["id"],
        indicator=LiveIndicator.LIVE if stream.get("type", "live") == "live" else LiveIndicator.NONE,
        title=stream.get("title"),
        category=stream.get("game_name") or None,
        channel_title=stream.get("user_name"),
        actual_start=parse_timestamp(stream.get("started_at")),
    )


class TwitchPoller(PlatformPoller):
    """Status polling with offline grace and EventSub notifications for Twitch."""

    platform = "twitch"

    def __init__(self, config: PlatformConfig, registry: TrackingRegistry, reconciler: StateReconciler,
                 client: TwitchApiClient, clock: Optional[Callable[[], datetime]] = None, **kwargs: Any):
        super().__init__(config, registry, reconciler, **kwargs)
        self.client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._live: Dict[str, LiveStream] = {}
        self._channel_info: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_config(
        cls,
        config: PlatformConfig,
        registry: TrackingRegistry,
        reconciler: StateReconciler,
        repository: Repository
    ) -> "TwitchPoller":
        retry_engine = RetryPolicyEngine("twitch", config.retry_config())
        client = TwitchApiClient(config.client_id or "", config.client_secret or "", retry_engine)

        subscriptions = None
        if config.callback_url and config.webhook_secret:
            subscriptions = SubscriptionLifecycleManager(
                PushSubscriptionBackend(
                    EVENTSUB_URL,
                    config.callback_url,
                    config.webhook_secret,
                    EVENTSUB_TOPICS,
                    headers_provider=client.auth_headers,
                    condition_builder=client.eventsub_condition,
                ),
                repository,
                retry_engine,
                lease_seconds=config.lease_seconds,
                renewal_buffer=config.renewal_buffer,
            )

        return cls(config, registry, reconciler, client, retry_engine=retry_engine, subscriptions=subscriptions)

    @property
    def live_channels(self) -> Dict[str, LiveStream]:
        return dict(self._live)

    async def on_start(self) -> None:
        await self.client.start()
        if self.subscriptions is not None:
            self.subscriptions.start()

    async def on_stop(self) -> None:
        await self.client.close()
        if self.subscriptions is not None:
            await self.subscriptions.close()

    async def poll_status(self) -> None:
        batch_size = max(1, min(self.config.batch_size, MAX_LOGINS_PER_CALL))
        await self.for_each("status recheck", list(chunked(self.tracked_channels(), batch_size)), self._check_batch)
        self.passes_completed += 1

    async def _check_batch(self, logins: List[str]) -> None:
        now = self._clock()
        streams = await self.client.get_streams(logins)
        observations: List[RawObservation] = []
        seen = set()

        for stream in streams:
            observation = observation_from_stream(stream)
            login = observation.channel_key
            seen.add(login)

            known = self._live.get(login)
            if known is not None and known.stream_id != observation.external_id:
                # A new broadcast replaced the old one between polls
                observations.append(self._ended(login, known, observation.actual_start or now))
            self._live[login] = LiveStream(observation.external_id, observation.actual_start)
            observations.append(observation)

        for login in logins:
            if login in seen or login not in self._live:
                continue
            observation = self._check_missing(login, now)
            if observation is not None:
                observations.append(observation)

        await self.submit(observations)

    def _check_missing(self, login: str, now: datetime) -> Optional[RawObservation]:
        known = self._live[login]
        if known.missing_since is None:
            known.missing_since = now
            self.logger.debug(f"{login} missing from stream list, waiting {self.config.offline_grace_seconds}s")
            return None

        if (now - known.missing_since).total_seconds() < self.config.offline_grace_seconds:
            return None

        return self._ended(login, known, known.missing_since)

    def _ended(self, login: str, known: LiveStream, ended_at: datetime) -> RawObservation:
        if self._live.get(login) is known:
            del self._live[login]
        return RawObservation(
            platform=self.platform,
            channel_key=login,
            external_id=known.stream_id,
            indicator=LiveIndicator.NONE,
            actual_start=known.started_at,
            actual_end=ended_at,
        )

    async def refresh_titles(self) -> None:
        async def refresh(logins: List[str]) -> None:
            users = await self.client.get_users(logins)
            ids = [user["id"] for user in users]
            for channel in await self.client.get_channels(ids):
                login = channel.get("broadcaster_login", "").lower()
                if login:
                    self._channel_info[login] = channel

        await self.for_each(
            "title refresh", list(chunked(self.tracked_channels(), MAX_LOGINS_PER_CALL)), refresh
        )

    def channel_info(self, login: str) -> Optional[Dict[str, Any]]:
        return self._channel_info.get(login.lower())

    async def handle_notification(self, payload: Dict[str, Any]) -> None:
        """Apply an EventSub notification body."""
        topic = payload.get("subscription", {}).get("type")
        event = payload.get("event", {})
        login = (event.get("broadcaster_user_login") or "").lower()

        if not topic or not login:
            self.logger.warning(f"Ignoring malformed EventSub notification: {payload}")
            return
        if not self.is_tracked(login):
            self.logger.debug(f"Ignoring {topic} for untracked channel {login}")
            return

        self.notifications_handled += 1

        if topic == "stream.online":
            started_at = parse_timestamp(event.get("started_at")) or self._clock()
            stream_id = event["id"]
            self._live[login] = LiveStream(stream_id, started_at)
            info = self._channel_info.get(login, {})
            await self.submit([RawObservation(
                platform=self.platform,
                channel_key=login,
                external_id=stream_id,
                indicator=LiveIndicator.LIVE,
                title=info.get("title"),
                category=info.get("game_name") or None,
                channel_title=event.get("broadcaster_user_name"),
                actual_start=started_at,
            )])

        elif topic == "stream.offline":
            known = self._live.get(login)
            if known is not None and known.missing_since is None:
                known.missing_since = self._clock()

        elif topic == "channel.update":
            info = self._channel_info.setdefault(login, {})
            info.update({"title": event.get("title"), "game_name": event.get("category_name")})
            known = self._live.get(login)
            if known is not None:
                await self.submit([RawObservation(
                    platform=self.platform,
                    channel_key=login,
                    external_id=known.stream_id,
                    title=event.get("title"),
                    category=event.get("category_name") or None,
                )])

        else:
            self.logger.debug(f"Unhandled EventSub topic {topic}")
