"""Interfaces to the marketplace subsystems federation reads from and delivers to.

Profile search, posting search and chat delivery live outside this package.
The federation layer only talks to them through the abstract clients below;
the in-memory implementations back the default application and the tests.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from barter_federation.schemas import FederatedPostingData, FederatedUserProfile

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclasses.dataclass
class RelayedMessage:
    """A chat message that arrived from a federated server."""

    message_id: str
    sender_user_id: str
    sender_server_id: str
    recipient_user_id: str
    encrypted_payload: str
    sender_name: Optional[str]
    sender_public_key: Optional[str]
    timestamp: int


@dataclasses.dataclass
class DeliveryReceipt:
    """Outcome of handing a relayed message to the chat subsystem."""

    accepted: bool
    method: str  # "live" or "offline"


class UserDirectory(abc.ABC):
    """Read access to local users that may be shared with federated servers."""

    @abc.abstractmethod
    async def nearby_users(
        self, lat: float, lon: float, radius_km: float, limit: int
    ) -> List[FederatedUserProfile]:
        pass

    @abc.abstractmethod
    async def search_profiles(self, query: str, limit: int) -> List[FederatedUserProfile]:
        pass

    @abc.abstractmethod
    async def users_for_sync(
        self, page: int, page_size: int, updated_since: Optional[datetime]
    ) -> Tuple[List[FederatedUserProfile], int]:
        """Returns one page of users and the total number of matching users."""
        pass


class PostingDirectory(abc.ABC):
    """Read access to local postings that may be shared with federated servers."""

    @abc.abstractmethod
    async def search_postings(
        self, query: str, limit: int, is_offer: Optional[bool]
    ) -> List[FederatedPostingData]:
        pass


class ChatDelivery(abc.ABC):
    """Hands relayed messages to local recipients."""

    @abc.abstractmethod
    async def user_exists(self, user_id: str) -> bool:
        pass

    @abc.abstractmethod
    async def deliver(self, message: RelayedMessage) -> DeliveryReceipt:
        pass


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, profiles: Optional[List[FederatedUserProfile]] = None) -> None:
        self._profiles: Dict[str, FederatedUserProfile] = {}
        self._updated_at: Dict[str, datetime] = {}
        for profile in profiles or []:
            self.add(profile)

    def add(self, profile: FederatedUserProfile, updated_at: Optional[datetime] = None) -> None:
        self._profiles[profile.user_id] = profile
        self._updated_at[profile.user_id] = updated_at or datetime.now(timezone.utc)

    async def nearby_users(
        self, lat: float, lon: float, radius_km: float, limit: int
    ) -> List[FederatedUserProfile]:
        ranked = []
        for profile in self._profiles.values():
            if profile.location is None:
                continue
            distance = haversine_km(lat, lon, profile.location.lat, profile.location.lon)
            if distance <= radius_km:
                ranked.append((distance, profile.user_id, profile))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return [profile for _, _, profile in ranked[:limit]]

    async def search_profiles(self, query: str, limit: int) -> List[FederatedUserProfile]:
        needle = query.lower()
        matches = [
            profile
            for profile in self._profiles.values()
            if needle in (profile.name or "").lower()
            or any(needle in attr.attribute_id.lower() for attr in profile.attributes)
        ]
        return matches[:limit]

    async def users_for_sync(
        self, page: int, page_size: int, updated_since: Optional[datetime]
    ) -> Tuple[List[FederatedUserProfile], int]:
        user_ids = sorted(self._profiles)
        if updated_since is not None:
            if updated_since.tzinfo is None:
                updated_since = updated_since.replace(tzinfo=timezone.utc)
            user_ids = [uid for uid in user_ids if self._updated_at[uid] >= updated_since]
        start = page * page_size
        return [self._profiles[uid] for uid in user_ids[start : start + page_size]], len(user_ids)


class InMemoryPostingDirectory(PostingDirectory):
    def __init__(self, postings: Optional[List[FederatedPostingData]] = None) -> None:
        self._postings: List[FederatedPostingData] = list(postings or [])

    def add(self, posting: FederatedPostingData) -> None:
        self._postings.append(posting)

    async def search_postings(
        self, query: str, limit: int, is_offer: Optional[bool]
    ) -> List[FederatedPostingData]:
        needle = query.lower()
        matches = [
            posting
            for posting in self._postings
            if posting.status == "active"
            and (is_offer is None or posting.is_offer == is_offer)
            and (
                needle in posting.title.lower()
                or needle in posting.description.lower()
                or any(needle in attr.lower() for attr in posting.attributes)
            )
        ]
        return matches[:limit]


class InMemoryChatDelivery(ChatDelivery):
    """Keeps delivered messages in memory, split by whether the recipient was online."""

    def __init__(self, users: Optional[Set[str]] = None, online: Optional[Set[str]] = None) -> None:
        self.users: Set[str] = set(users or ())
        self.online: Set[str] = set(online or ())
        self.live: List[RelayedMessage] = []
        self.offline: List[RelayedMessage] = []

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    async def deliver(self, message: RelayedMessage) -> DeliveryReceipt:
        if message.recipient_user_id in self.online:
            self.live.append(message)
            logger.debug("Delivered relayed message %s live", message.message_id)
            return DeliveryReceipt(accepted=True, method="live")
        self.offline.append(message)
        logger.debug("Queued relayed message %s for offline delivery", message.message_id)
        return DeliveryReceipt(accepted=True, method="offline")


__all__ = [
    "ChatDelivery",
    "DeliveryReceipt",
    "InMemoryChatDelivery",
    "InMemoryPostingDirectory",
    "InMemoryUserDirectory",
    "PostingDirectory",
    "RelayedMessage",
    "UserDirectory",
    "haversine_km",
]
