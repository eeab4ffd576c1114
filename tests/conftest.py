from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from crewdesk.approvals import ActionDesk
from crewdesk.brainstorm import BrainstormController
from crewdesk.chat import ConversationController
from crewdesk.config import AppSettings, GatewayEndpointConfig
from crewdesk.db import Database
from crewdesk.encoder import TextDocumentEncoder
from crewdesk.events import EventBus
from crewdesk.main import create_app
from crewdesk.schemas import Company, Employee, Project
from tests.fakes import FakeGatewayClient

# Persona tokens let the fake gateway tell employees apart by system instruction.
PA_PERSONA = "[persona:assistant] You are Alex, the Personal Assistant."
PM_PERSONA = "[persona:pm] You are Dana, the Project Manager."
ENG_PERSONA = "[persona:eng] You are Sam, the Software Engineer."
MKT_PERSONA = "[persona:mkt] You are Riley, the Marketing Specialist."


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://gateway.test/v1")
    settings = AppSettings(
        gateway=GatewayEndpointConfig(
            base_url=base_url,
            model_id="test-model",
            image_model_id="test-image-model",
            api_key="secret-key",
        ),
        max_output_tokens=1024,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


async def seed_org(db: Database) -> SimpleNamespace:
    company = await db.save_company(Company(name="Acme Labs", profile="We build developer tools."))
    assistant = await db.save_employee(
        Employee(company_id=company.id, name="Alex", job_profile="Personal Assistant", system_instruction=PA_PERSONA)
    )
    pm = await db.save_employee(
        Employee(company_id=company.id, name="Dana", job_profile="Project Manager", system_instruction=PM_PERSONA)
    )
    engineer = await db.save_employee(
        Employee(company_id=company.id, name="Sam", job_profile="Software Engineer", system_instruction=ENG_PERSONA)
    )
    marketer = await db.save_employee(
        Employee(
            company_id=company.id, name="Riley", job_profile="Marketing Specialist", system_instruction=MKT_PERSONA
        )
    )
    project = await db.save_project(
        Project(
            company_id=company.id,
            name="Apollo",
            description="Public API launch",
            employee_ids=[pm.id, engineer.id],
        )
    )
    return SimpleNamespace(
        company=company,
        assistant=assistant,
        pm=pm,
        engineer=engineer,
        marketer=marketer,
        project=project,
    )


@pytest.fixture
async def db(tmp_path: Path):
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
async def org(db: Database):
    return await seed_org(db)


@pytest.fixture
def fake_lm():
    return FakeGatewayClient()


@pytest.fixture
def controllers(db: Database, fake_lm: FakeGatewayClient):
    desk = ActionDesk(db, TextDocumentEncoder())
    bus = EventBus(db)
    chat = ConversationController(db, fake_lm, desk)
    brainstorm = BrainstormController(db, fake_lm, desk, bus)
    return SimpleNamespace(desk=desk, bus=bus, chat=chat, brainstorm=brainstorm)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeGatewayClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeGatewayClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, lm_client=lm_client, config_path=cfg_path)
        return app, cfg_path, lm_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, lm_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            yield http_client
