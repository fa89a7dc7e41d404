"""Document store client (Data API over HTTPS)."""
import logging
from typing import Optional

import httpx

from .config import Settings
from .errors import InternalError
from .models import VoteRecord

logger = logging.getLogger(__name__)


def build_vote_count_pipeline(cap: int) -> list:
    """
    Aggregation pipeline producing per-project vote totals.

    Each (project, ip) pair contributes at most `cap` votes. Projects
    without votes are dropped by the unwind stage.
    """
    return [
        {"$unwind": {"path": "$votes"}},
        {
            "$group": {
                "_id": {"ip": "$votes.ip", "id": "$_id"},
                "name": {"$first": "$name"},
                "votes": {"$sum": 1},
            }
        },
        {
            "$addFields": {
                "cappedVotes": {
                    "$cond": [{"$gt": ["$votes", cap]}, cap, "$votes"]
                }
            }
        },
        {
            "$group": {
                "_id": "$_id.id",
                "name": {"$first": "$name"},
                "totalVotes": {"$sum": "$cappedVotes"},
            }
        },
        {"$sort": {"totalVotes": -1}},
    ]


class Database:
    """Async client for the document store's HTTP query API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def initialize(self):
        """Open the HTTP client with the API key headers."""
        self.client = httpx.AsyncClient(
            base_url=self.settings.MONGO_BASE_URL,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "api-key": self.settings.MONGO_API_KEY,
            },
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            transport=self._transport
        )
        logger.info(f"Document store client initialized for {self.settings.MONGO_BASE_URL}")

    async def _action(self, action: str, body: dict) -> dict:
        """
        Run one Data API action against the configured collection.

        Args:
            action: Action name (find, updateOne, aggregate)
            body: Action-specific payload

        Returns:
            Decoded JSON response

        Raises:
            InternalError: On transport failure or non-200 status
        """
        payload = {**self.settings.data_api_target, **body}
        try:
            res = await self.client.post(f"/action/{action}", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Document store {action} request failed: {e}")
            raise InternalError("Error connecting to database.") from e

        if res.status_code != 200:
            logger.error(f"Document store {action} answered with status {res.status_code}")
            raise InternalError("Error connecting to database.")

        return res.json()

    async def get_projects(self) -> list:
        """
        Get all projects without their vote records.

        Returns:
            List of project documents
        """
        data = await self._action("find", {"projection": {"votes": 0}})
        return data.get("documents", [])

    async def vote(self, project_id: int, ip: str, user_agent: str) -> bool:
        """
        Append a vote record to a project.

        Args:
            project_id: Project identifier
            ip: Voter address
            user_agent: Voter user agent

        Returns:
            True if a project was modified, False if none matched
        """
        record = VoteRecord(ip=ip, user_agent=user_agent)
        data = await self._action(
            "updateOne",
            {
                "filter": {"_id": project_id},
                "update": {"$push": {"votes": record.to_document()}},
            },
        )
        return data.get("modifiedCount", 0) != 0

    async def get_vote_counts(self) -> list:
        """
        Get capped vote totals per project, highest first.

        Returns:
            List of {_id, name, totalVotes} documents
        """
        data = await self._action(
            "aggregate",
            {"pipeline": build_vote_count_pipeline(self.settings.VOTE_CAP_PER_IP)},
        )
        return data.get("documents", [])

    async def check_health(self) -> bool:
        """
        Check document store reachability.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            await self._action("find", {"projection": {"_id": 1}, "limit": 1})
            return True
        except Exception as e:
            logger.error(f"Document store health check failed: {e}")
            return False

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            logger.info("Document store client closed")
