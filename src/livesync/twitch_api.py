"""
Twitch Helix API client for the live-state synchronizer.
Handles user-token refresh, pagination and payload parsing.

Every public call returns either the parsed payload or an error value from
errors.py; ordinary failures (HTTP status, network, malformed JSON) are
never raised.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp

from .errors import NotAuthenticated, SyncError, UpstreamError, ValidationError
from .logger import get_logger


Params = List[Tuple[str, str]]

_DURATION_RE = re.compile(r'^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$')


@dataclass
class FollowedChannelData:
    """A channel the user follows."""
    channel_id: str
    channel_login: str
    channel_name: str
    followed_at: Optional[str]


@dataclass
class StreamData:
    """Live stream information from Twitch API."""
    stream_id: str
    user_id: str
    user_login: str
    user_name: str
    game_id: str
    game_name: str
    title: str
    viewer_count: int
    started_at: str
    thumbnail_url: str


@dataclass
class RecordingData:
    """An archived broadcast (VOD)."""
    recording_id: str
    channel_id: str
    title: str
    duration_seconds: int
    created_at: str
    thumbnail_url: str


@dataclass
class UserData:
    """Public user profile."""
    id: str
    login: str
    display_name: str
    profile_image_url: str


def parse_duration(duration: str) -> Optional[int]:
    """Convert a Helix duration such as '3h8m33s' to seconds."""
    if not isinstance(duration, str) or not duration:
        return None
    match = _DURATION_RE.match(duration.strip())
    if match is None:
        return None
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


class TokenManager:
    """
    Holds the user access token and renews it with the refresh-token grant.

    Token issuance (the OAuth authorization-code flow) happens elsewhere;
    this only keeps an already issued token pair alive.
    """

    AUTH_URL = "https://id.twitch.tv/oauth2/token"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        on_refresh: Optional[Callable[[str, str], Awaitable[None]]] = None
    ):
        """
        Args:
            client_id: Twitch application Client ID.
            client_secret: Twitch application Client Secret.
            access_token: Current user access token.
            refresh_token: Refresh token paired with the access token.
            on_refresh: Called with the new (access, refresh) pair so the
                owner can persist it.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token or None
        self.refresh_token = refresh_token or None
        self._on_refresh = on_refresh
        self._refresh_lock = asyncio.Lock()
        self._logger = get_logger('auth')

    def clear(self) -> None:
        """Forget both tokens; later calls report NotAuthenticated."""
        self.access_token = None
        self.refresh_token = None

    async def refresh(
        self,
        session: aiohttp.ClientSession,
        failed_token: Optional[str] = None
    ) -> bool:
        """
        Exchange the refresh token for a new token pair.

        Concurrent callers share one refresh: a caller whose failed token
        has already been replaced returns immediately.

        Args:
            session: HTTP session for the token request.
            failed_token: Access token that was rejected; defaults to the
                current one.

        Returns:
            True if a usable access token is available afterwards.
        """
        stale_token = failed_token if failed_token is not None else self.access_token
        async with self._refresh_lock:
            if self.access_token is not None and self.access_token != stale_token:
                return True

            if not self.refresh_token:
                self._logger.warning("No refresh token available")
                self.clear()
                return False

            try:
                async with session.post(
                    self.AUTH_URL,
                    data={
                        'client_id': self.client_id,
                        'client_secret': self.client_secret,
                        'grant_type': 'refresh_token',
                        'refresh_token': self.refresh_token
                    }
                ) as resp:
                    if resp.status != 200:
                        self._logger.error(f"Token refresh rejected: {resp.status}")
                        self.clear()
                        return False

                    data = await resp.json()

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self._logger.error(f"Token refresh failed: {e}")
                return False

            access_token = data.get('access_token') if isinstance(data, dict) else None
            refresh_token = data.get('refresh_token') if isinstance(data, dict) else None
            if not access_token or not refresh_token:
                self._logger.error("Token refresh response missing tokens")
                self.clear()
                return False

            self.access_token = access_token
            self.refresh_token = refresh_token
            self._logger.debug("Got new user access token")

        if self._on_refresh is not None:
            await self._on_refresh(access_token, refresh_token)
        return True


class TwitchAPI:
    """
    Twitch Helix API client.

    Features:
    - User token authentication with one refresh-and-retry on 401
    - Transparent cursor pagination
    - Batched user lookups
    """

    BASE_URL = "https://api.twitch.tv/helix"
    PAGE_SIZE = 100
    USERS_PER_REQUEST = 100

    def __init__(self, client_id: str, tokens: TokenManager, timeout: float = 15.0):
        """
        Initialize Twitch API client.

        Args:
            client_id: Twitch application Client ID.
            tokens: Token manager supplying the user access token.
            timeout: Total timeout per HTTP request, in seconds.
        """
        self.client_id = client_id
        self.tokens = tokens
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = get_logger('twitch_api')

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._logger.info("Twitch API session opened")

    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _headers(self, token: str) -> dict:
        return {
            'Client-ID': self.client_id,
            'Authorization': f'Bearer {token}'
        }

    async def _send(self, endpoint: str, params: Params, token: str) -> Tuple[int, Any]:
        """Perform one GET. Returns (status, decoded JSON body or None)."""
        async with self._session.get(
            f"{self.BASE_URL}{endpoint}",
            headers=self._headers(token),
            params=params
        ) as resp:
            if resp.status != 200:
                return resp.status, None
            return resp.status, await resp.json()

    async def _request(self, endpoint: str, params: Params) -> Union[Dict[str, Any], SyncError]:
        """
        GET a Helix endpoint.

        Attempt once; on 401 refresh the token and attempt exactly once more.
        """
        if self._session is None:
            return UpstreamError("Twitch API session is not connected")

        for attempt in range(2):
            token = self.tokens.access_token
            if not token:
                return NotAuthenticated("Not authenticated")

            try:
                status, body = await self._send(endpoint, params, token)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._logger.warning(f"Request to {endpoint} failed: {e}")
                return UpstreamError(f"Twitch API request failed: {e}")
            except ValueError as e:
                return ValidationError(f"Invalid JSON from {endpoint}: {e}")

            if status == 401:
                if attempt == 0 and await self.tokens.refresh(self._session, token):
                    continue
                return NotAuthenticated("Not authenticated")

            if status != 200:
                self._logger.warning(f"API error on {endpoint}: {status}")
                return UpstreamError(f"Twitch API error: {status}", status=status)

            if not isinstance(body, dict) or not isinstance(body.get('data'), list):
                return ValidationError(f"Unexpected response shape from {endpoint}")

            return body

        return NotAuthenticated("Not authenticated")

    async def _request_all_pages(
        self,
        endpoint: str,
        params: Params
    ) -> Union[List[dict], SyncError]:
        """Follow pagination cursors until exhausted; any failure discards everything."""
        items: List[dict] = []
        cursor: Optional[str] = None

        while True:
            page_params = params + [('first', str(self.PAGE_SIZE))]
            if cursor:
                page_params.append(('after', cursor))

            body = await self._request(endpoint, page_params)
            if isinstance(body, SyncError):
                return body

            items.extend(body['data'])

            pagination = body.get('pagination') or {}
            next_cursor = pagination.get('cursor') if isinstance(pagination, dict) else None
            if not next_cursor or next_cursor == cursor:
                return items
            cursor = next_cursor

    async def list_followed_channels(
        self,
        user_id: str
    ) -> Union[List[FollowedChannelData], SyncError]:
        """
        Get every channel the user follows.

        Args:
            user_id: Twitch user id of the follower.
        """
        items = await self._request_all_pages('/channels/followed', [('user_id', user_id)])
        if isinstance(items, SyncError):
            return items

        try:
            return [
                FollowedChannelData(
                    channel_id=str(c['broadcaster_id']),
                    channel_login=c['broadcaster_login'],
                    channel_name=c.get('broadcaster_name') or c['broadcaster_login'],
                    followed_at=c.get('followed_at')
                )
                for c in items
            ]
        except (KeyError, TypeError) as e:
            return ValidationError(f"Malformed followed channel entry: {e}")

    async def list_live_streams(self, user_id: str) -> Union[List[StreamData], SyncError]:
        """Get live streams among the user's follows."""
        items = await self._request_all_pages('/streams/followed', [('user_id', user_id)])
        if isinstance(items, SyncError):
            return items

        try:
            return [
                StreamData(
                    stream_id=str(s['id']),
                    user_id=str(s['user_id']),
                    user_login=s['user_login'],
                    user_name=s.get('user_name', s['user_login']),
                    game_id=s.get('game_id', ''),
                    game_name=s.get('game_name', 'Unknown'),
                    title=s.get('title', ''),
                    viewer_count=int(s.get('viewer_count', 0)),
                    started_at=s.get('started_at', ''),
                    thumbnail_url=s.get('thumbnail_url', '')
                )
                for s in items
            ]
        except (KeyError, TypeError, ValueError) as e:
            return ValidationError(f"Malformed stream entry: {e}")

    async def list_recordings(
        self,
        channel_id: str,
        limit: int = 5
    ) -> Union[List[RecordingData], SyncError]:
        """
        Get the newest archived broadcasts of a channel.

        Args:
            channel_id: Broadcaster user id.
            limit: Number of recordings (1-100), newest first.
        """
        body = await self._request('/videos', [
            ('user_id', channel_id),
            ('type', 'archive'),
            ('first', str(max(1, min(limit, 100))))
        ])
        if isinstance(body, SyncError):
            return body

        recordings = []
        try:
            for v in body['data']:
                duration = parse_duration(v.get('duration', ''))
                if duration is None:
                    self._logger.warning(f"Unparsable duration {v.get('duration')!r} for video {v.get('id')}")
                    duration = 0
                recordings.append(RecordingData(
                    recording_id=str(v['id']),
                    channel_id=str(v.get('user_id') or channel_id),
                    title=v.get('title', ''),
                    duration_seconds=duration,
                    created_at=v['created_at'],
                    thumbnail_url=v.get('thumbnail_url', '')
                ))
        except (KeyError, TypeError) as e:
            return ValidationError(f"Malformed video entry: {e}")

        return recordings

    async def lookup_users(
        self,
        ids: Optional[Sequence[str]] = None,
        logins: Optional[Sequence[str]] = None
    ) -> Union[List[UserData], SyncError]:
        """
        Look up users by id and/or login, at most 100 per request.

        Any failed batch fails the whole lookup.
        """
        keys = [('id', str(i)) for i in (ids or [])] + [('login', login) for login in (logins or [])]
        if not keys:
            return ValidationError("Must provide ids or logins")

        users: List[UserData] = []
        for start in range(0, len(keys), self.USERS_PER_REQUEST):
            body = await self._request('/users', keys[start:start + self.USERS_PER_REQUEST])
            if isinstance(body, SyncError):
                return body

            try:
                users.extend(
                    UserData(
                        id=str(u['id']),
                        login=u['login'],
                        display_name=u.get('display_name') or u['login'],
                        profile_image_url=u.get('profile_image_url', '')
                    )
                    for u in body['data']
                )
            except (KeyError, TypeError) as e:
                return ValidationError(f"Malformed user entry: {e}")

        return users


async def main():
    """Smoke-test the client with real credentials."""
    from .logger import setup_logging

    setup_logging(level="DEBUG")

    tokens = TokenManager(
        client_id="YOUR_CLIENT_ID",
        client_secret="YOUR_CLIENT_SECRET",
        access_token="YOUR_USER_ACCESS_TOKEN"
    )
    api = TwitchAPI(client_id="YOUR_CLIENT_ID", tokens=tokens)
    await api.connect()

    try:
        streams = await api.list_live_streams("YOUR_USER_ID")
        if isinstance(streams, SyncError):
            print(f"Error: {streams}")
        else:
            for stream in streams:
                print(f"LIVE: {stream.user_name} - {stream.title} ({stream.viewer_count} viewers)")
    finally:
        await api.disconnect()


if __name__ == '__main__':
    asyncio.run(main())
