"""Pytest fixtures for the voting API tests.

The application runs in-process through httpx's ASGI transport, inside its
own lifespan. Outbound calls to the document store and to the captcha
service are answered by in-memory fakes mounted on an httpx MockTransport.
"""

import copy
import json
import time
from typing import AsyncGenerator, Dict, List, Optional

import httpx
import pytest

from services.voting_api.config import Settings
from services.voting_api.main import create_app

STORE_BASE_URL = "http://store.test/app/data-test/endpoint/data/v1"
CAPTCHA_URL = "http://captcha.test/recaptcha/api/siteverify"


class FakeDocumentStore:
    """In-memory stand-in for the document store's Data API.

    Understands the three actions the client issues (find, updateOne,
    aggregate) and records every request it receives.
    """

    def __init__(self, projects: List[Dict]):
        self.projects = {p["_id"]: copy.deepcopy(p) for p in projects}
        self.requests: List[Dict] = []
        self.fail_status: Optional[int] = None
        self.raw_body: Optional[bytes] = None

    def add_votes(self, project_id: int, ip: str, count: int, user_agent: str = "pytest"):
        votes = self.projects[project_id].setdefault("votes", [])
        for _ in range(count):
            votes.append({"ip": ip, "userAgent": user_agent, "time": "2024-01-01T00:00:00.000Z"})

    def votes_for(self, project_id: int) -> List[Dict]:
        return self.projects[project_id].get("votes", [])

    def handle(self, request: httpx.Request) -> httpx.Response:
        action = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content)
        self.requests.append({"action": action, "body": body, "headers": request.headers})

        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "store unavailable"})
        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body)

        if action == "find":
            return httpx.Response(200, json={"documents": self._find(body)})
        if action == "updateOne":
            return httpx.Response(200, json=self._update_one(body))
        if action == "aggregate":
            return httpx.Response(200, json={"documents": self._aggregate(body)})
        return httpx.Response(400, json={"error": f"unknown action {action}"})

    def _find(self, body: Dict) -> List[Dict]:
        projection = body.get("projection", {})
        documents = []
        for project in self.projects.values():
            if projection.get("_id") == 1:
                document = {"_id": project["_id"]}
            else:
                document = {
                    key: copy.deepcopy(value)
                    for key, value in project.items()
                    if projection.get(key, 1) != 0
                }
            documents.append(document)
        if "limit" in body:
            documents = documents[:body["limit"]]
        return documents

    def _update_one(self, body: Dict) -> Dict:
        project = self.projects.get(body["filter"]["_id"])
        if project is None:
            return {"matchedCount": 0, "modifiedCount": 0}
        for field, value in body["update"]["$push"].items():
            project.setdefault(field, []).append(value)
        return {"matchedCount": 1, "modifiedCount": 1}

    def _aggregate(self, body: Dict) -> List[Dict]:
        # Cap is read from the pipeline so the client's pipeline drives the result
        stages = {next(iter(stage)): stage[next(iter(stage))] for stage in body["pipeline"]}
        cap = stages["$addFields"]["cappedVotes"]["$cond"][1]

        totals = []
        for project in self.projects.values():
            votes = project.get("votes", [])
            if not votes:
                continue
            per_ip: Dict[str, int] = {}
            for vote in votes:
                per_ip[vote["ip"]] = per_ip.get(vote["ip"], 0) + 1
            totals.append({
                "_id": project["_id"],
                "name": project.get("name"),
                "totalVotes": sum(min(count, cap) for count in per_ip.values()),
            })
        return sorted(totals, key=lambda t: -t["totalVotes"])


class FakeCaptchaService:
    """Scripted captcha `siteverify` endpoint."""

    def __init__(self):
        self.success = True
        self.status_code = 200
        self.requests: List[Dict] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.requests.append({"form": form, "headers": request.headers})
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="unavailable")
        return httpx.Response(200, json={"success": self.success})


@pytest.fixture
def sample_projects() -> List[Dict]:
    """Projects as stored in the document store."""
    return [
        {
            "_id": 1,
            "name": "Alpha",
            "cat": 1,
            "summary": "Solar powered irrigation",
            "members": ["Ana", "Bruno"],
        },
        {
            "_id": 2,
            "name": "Beta",
            "cat": 2,
            "summary": "Recycling robot",
            "members": ["Carla"],
        },
        {
            "_id": 3,
            "name": "Gamma",
            "cat": 1,
            "summary": "Library app",
            "members": ["Davi", "Eva", "Fabio"],
        },
    ]


@pytest.fixture
def store(sample_projects: List[Dict]) -> FakeDocumentStore:
    return FakeDocumentStore(sample_projects)


@pytest.fixture
def captcha_service() -> FakeCaptchaService:
    return FakeCaptchaService()


@pytest.fixture
def transport(store: FakeDocumentStore, captcha_service: FakeCaptchaService) -> httpx.MockTransport:
    """Route outbound requests to the fake store or the fake captcha service by host."""
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "store.test":
            return store.handle(request)
        if request.url.host == "captcha.test":
            return captcha_service.handle(request)
        return httpx.Response(502, text=f"unexpected host {request.url.host}")

    return httpx.MockTransport(handler)


@pytest.fixture
def settings() -> Settings:
    """Settings with voting open for another hour."""
    return Settings(
        MONGO_BASE_URL=STORE_BASE_URL,
        MONGO_API_KEY="test-api-key",
        RECAPTCHA_SECRET="test-recaptcha-secret",
        RECAPTCHA_VERIFY_URL=CAPTCHA_URL,
        VOTING_END_TIMESTAMP=time.time() + 3600,
    )


@pytest.fixture
def app(settings: Settings, transport: httpx.MockTransport):
    return create_app(settings, transport=transport)


@pytest.fixture
async def api_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the in-process app, lifespan included."""
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver"
        ) as client:
            yield client


@pytest.fixture
async def lenient_api_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Like api_client, but returns 500 responses instead of raising app errors."""
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
            base_url="http://testserver"
        ) as client:
            yield client


@pytest.fixture
def voter_headers() -> Dict[str, str]:
    return {"CF-Connecting-IP": "1.1.1.1", "User-Agent": "pytest-voter/1.0"}


@pytest.fixture
def cast_vote(api_client: httpx.AsyncClient):
    """Helper posting a vote with a captcha token from a given address."""
    async def _cast(project_id, ip: str = "1.1.1.1", token: str = "token-ok", user_agent: str = "pytest-voter/1.0"):
        return await api_client.post(
            f"/projects/{project_id}/vote",
            json={"captchaResponse": token},
            headers={"CF-Connecting-IP": ip, "User-Agent": user_agent},
        )

    return _cast
