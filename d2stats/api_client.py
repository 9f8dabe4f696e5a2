# d2stats/api_client.py

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from d2stats.enums import Mode, Platform
from d2stats.settings import get_api_key

logger = logging.getLogger(__name__)


class BungieAPIError(RuntimeError):
    """Raised when Bungie.net returns a failed response or cannot be reached."""

    def __init__(self, message: str, error_code: Optional[int] = None, error_status: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code
        self.error_status = error_status


class BungieAPIClient:
    BASE = "https://www.bungie.net/Platform"
    STATS_BASE = "https://stats.bungie.net/Platform"
    HEADERS = {
        "Accept": "application/json",
        "User-Agent": "d2stats/0.1",
    }

    SUCCESS_CODE = 1
    # Reports that exist but will never be served to us
    NO_DATA_STATUSES = {
        "DestinyPGCRNotFound",
        "DestinyPrivacyRestriction",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: int = 20,
        page_size: int = 250,
        sleep_seconds: float = 0.0,
        rate_limit_pause_seconds: float = 10.0,
    ):
        self.api_key = get_api_key(api_key)
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self.sleep_seconds = sleep_seconds
        self.rate_limit_pause_seconds = rate_limit_pause_seconds

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.HEADERS)
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _get_json(self, url: str, retry_429: bool = True) -> Dict[str, Any]:
        req = Request(url, headers=self._headers(), method="GET")
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            if exc.code == 429 and retry_429:
                logger.info("Rate limited by Bungie.net; retrying in %ss", self.rate_limit_pause_seconds)
                time.sleep(self.rate_limit_pause_seconds)
                return self._get_json(url, retry_429=False)
            payload = self._read_error_body(exc)
            if payload is None:
                raise BungieAPIError(f"HTTP {exc.code} from {url}") from exc
        except URLError as exc:
            raise BungieAPIError(f"Could not reach {url}: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise BungieAPIError(f"Invalid JSON from {url}: {exc}") from exc

        return payload

    @staticmethod
    def _read_error_body(exc: HTTPError) -> Optional[Dict[str, Any]]:
        """Bungie sends its error envelope with non-200 statuses; keep it when present."""
        try:
            body = json.loads(exc.read().decode("utf-8"))
        except (ValueError, AttributeError, OSError):
            return None
        return body if isinstance(body, dict) and "ErrorCode" in body else None

    def _unwrap(self, payload: Dict[str, Any], allow_no_data: bool = False) -> Optional[Dict[str, Any]]:
        code = payload.get("ErrorCode")
        status = payload.get("ErrorStatus")
        if code == self.SUCCESS_CODE:
            response = payload.get("Response")
            return response if isinstance(response, dict) else {}
        if allow_no_data and status in self.NO_DATA_STATUSES:
            return None
        raise BungieAPIError(
            f"Bungie.net error {code} ({status}): {payload.get('Message', '')}",
            error_code=code,
            error_status=status,
        )

    @staticmethod
    def _stat(values: Dict[str, Any], key: str, default: Any = 0) -> Any:
        node = values.get(key, {})
        if not isinstance(node, dict):
            return default
        basic = node.get("basic", {})
        value = basic.get("value", default) if isinstance(basic, dict) else default
        return default if value is None else value

    @staticmethod
    def _safe_int(value: Any, default: int = 0) -> int:
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _safe_float(value: Any, default: float = 0.0) -> float:
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def parse_activity_summary(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        details = activity.get("activityDetails", {})
        return {
            "activity_id": str(details.get("instanceId")),
            "period": activity.get("period"),
            "mode": self._safe_int(details.get("mode")),
            "platform": self._safe_int(details.get("membershipType")),
            "director_activity_hash": self._safe_int(details.get("directorActivityHash")),
        }

    def parse_activity_history(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        activities = response.get("activities", []) if isinstance(response, dict) else []
        return [
            self.parse_activity_summary(a)
            for a in activities
            if (a.get("activityDetails") or {}).get("instanceId")
        ]

    def parse_carnage_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        values = entry.get("values", {})
        extended = (entry.get("extended") or {}).get("values", {})
        user = (entry.get("player") or {}).get("destinyUserInfo", {})
        return {
            "character_id": str(entry.get("characterId")),
            "member_id": str(user.get("membershipId")),
            "platform": self._safe_int(user.get("membershipType")),
            "assists": self._safe_int(self._stat(values, "assists")),
            "score": self._safe_int(self._stat(values, "score")),
            "kills": self._safe_int(self._stat(values, "kills")),
            "deaths": self._safe_int(self._stat(values, "deaths")),
            "average_score_per_kill": self._safe_float(self._stat(values, "averageScorePerKill")),
            "average_score_per_life": self._safe_float(self._stat(values, "averageScorePerLife")),
            "completed": self._safe_int(self._stat(values, "completed")),
            "opponents_defeated": self._safe_int(self._stat(values, "opponentsDefeated")),
            "activity_duration_seconds": self._safe_int(self._stat(values, "activityDurationSeconds")),
            "standing": self._safe_int(self._stat(values, "standing", entry.get("standing"))),
            "team": self._safe_int(self._stat(values, "team", None), -1),
            "completion_reason": self._safe_int(self._stat(values, "completionReason")),
            "start_seconds": self._safe_int(self._stat(values, "startSeconds")),
            "time_played_seconds": self._safe_int(self._stat(values, "timePlayedSeconds")),
            "player_count": self._safe_int(self._stat(values, "playerCount")),
            "team_score": self._safe_int(self._stat(values, "teamScore")),
            "precision_kills": self._safe_int(self._stat(extended, "precisionKills")),
            "weapon_kills_ability": self._safe_int(self._stat(extended, "weaponKillsAbility")),
            "weapon_kills_grenade": self._safe_int(self._stat(extended, "weaponKillsGrenade")),
            "weapon_kills_melee": self._safe_int(self._stat(extended, "weaponKillsMelee")),
            "weapon_kills_super": self._safe_int(self._stat(extended, "weaponKillsSuper")),
        }

    def parse_carnage_report(self, response: Dict[str, Any]) -> Dict[str, Any]:
        details = response.get("activityDetails", {})
        return {
            "activity_id": str(details.get("instanceId")),
            "period": response.get("period"),
            "mode": self._safe_int(details.get("mode")),
            "platform": self._safe_int(details.get("membershipType")),
            "director_activity_hash": self._safe_int(details.get("directorActivityHash")),
            "entries": [self.parse_carnage_entry(e) for e in response.get("entries", [])],
        }

    def get_activity_history_page(
        self,
        member_id: str,
        character_id: str,
        platform: Platform,
        mode: Mode,
        page: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return (parsed summaries, raw activity count) for one history page."""
        base = (
            f"{self.BASE}/Destiny2/{platform.to_id()}/Account/{member_id}"
            f"/Character/{character_id}/Stats/Activities/"
        )
        query = urlencode({"mode": mode.to_id(), "count": self.page_size, "page": page})
        response = self._unwrap(self._get_json(f"{base}?{query}"))
        raw_count = len(response.get("activities") or [])
        return self.parse_activity_history(response), raw_count

    def retrieve_activities_since_id(
        self,
        member_id: str,
        character_id: str,
        platform: Platform,
        mode: Mode,
        since_id: Optional[int] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Return activity summaries newer than since_id, newest first.

        since_id=None pages through the full history. Returns None when no
        newer activity exists.
        """
        activities: List[Dict[str, Any]] = []
        page = 0

        while True:
            summaries, raw_count = self.get_activity_history_page(
                member_id, character_id, platform, mode, page=page
            )
            reached_known = False
            for summary in summaries:
                if since_id is not None and int(summary["activity_id"]) <= since_id:
                    reached_known = True
                    break
                activities.append(summary)

            logger.debug("History page %s: %s activities (%s total)", page, len(summaries), len(activities))
            if reached_known or raw_count < self.page_size:
                break
            page += 1
            if self.sleep_seconds:
                time.sleep(self.sleep_seconds)

        return activities or None

    def retrieve_post_game_carnage_report(self, activity_id: str) -> Optional[Dict[str, Any]]:
        """Return the parsed report for one activity, or None if Bungie has no data for it."""
        payload = self._get_json(f"{self.STATS_BASE}/Destiny2/Stats/PostGameCarnageReport/{activity_id}/")
        response = self._unwrap(payload, allow_no_data=True)
        if not response or not response.get("activityDetails"):
            return None
        return self.parse_carnage_report(response)

    # --- Async fetch capability used by the sync engine ---

    async def fetch_since(
        self,
        member_id: str,
        character_id: str,
        platform: Platform,
        mode: Mode,
        since_id: Optional[int],
    ) -> Optional[List[Dict[str, Any]]]:
        return await asyncio.to_thread(
            self.retrieve_activities_since_id, member_id, character_id, platform, mode, since_id
        )

    async def fetch_detail(self, activity_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.retrieve_post_game_carnage_report, activity_id)
