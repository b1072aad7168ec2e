"""
@description 报表网关测试
@responsibility 验证缓存策略、路径映射、输出格式、使用记录和缓存预热
"""

import json
import os
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from app.core.config import Config
from app.core.context import GatewayContext
from app.core.database import create_engine, create_session_factory, init_db
from app.core.errors import (
    MalformedInputError,
    NotCachedError,
    RemoteObjectNotFound,
    RemoteUnavailableError,
    UnknownUserError,
)
from app.services.cognos_client import Folder, Report
from app.services.gateway import ReportGateway, folder_to_csv, parse_cache_control
from app.services.response_cache import ResponseCache
from app.services.usage_ledger import UsageLedger
from app.utils.helpers import cache_key

REPORT_PATH = ["bentonvisms", "public", "Daily Report"]


class FakeSession:
    """替代 CognosSession，按后端路径返回预设对象"""

    def __init__(self, objects: dict, csv_data: str = "a,b\n1,x\n", error: Exception | None = None):
        self.objects = objects
        self.csv_data = csv_data
        self.error = error
        self.downloads: list[tuple] = []
        self.resolved: list[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def resolve(self, path):
        self.resolved.append(tuple(path))
        if self.error is not None:
            raise self.error
        if tuple(path) not in self.objects:
            raise RemoteObjectNotFound("/".join(path))
        return self.objects[tuple(path)]

    async def download_report_csv(self, path, prompt_answers=None):
        self.downloads.append((tuple(path), prompt_answers))
        return self.csv_data


def _config() -> Config:
    return Config(
        master_password="master",
        cognos={
            "url": "https://cognos.test",
            "user_passwords": {"APSCN\\0401jpenn": "pw1", "APSCN\\other": "pw2"},
        },
    )


@pytest_asyncio.fixture
async def context(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/usage.db")
    await init_db(engine)
    ledger = UsageLedger(create_session_factory(engine), retry_delay=0)
    ctx = GatewayContext(
        _config(), tmp_path / "config.yaml", ResponseCache(tmp_path / "cache"), ledger, engine
    )
    yield ctx
    await ctx.close()


@pytest.fixture
def session():
    report = Report(("Public Folders", "Daily Report"))
    folder = Folder(
        ("Public Folders", "Attendance"),
        children={
            "By School": Report(("Public Folders", "Attendance", "By School")),
            "Archive": Folder(("Public Folders", "Attendance", "Archive")),
        },
    )
    return FakeSession(
        {
            ("Public Folders", "Daily Report"): report,
            ("Public Folders", "Attendance"): folder,
            ("~", "My Grades"): Report(("~", "My Grades")),
        }
    )


@pytest.fixture
def gateway(context, session):
    gw = ReportGateway(context)
    gw.open_session = AsyncMock(return_value=session)
    return gw


class TestParseCacheControl:
    @pytest.mark.parametrize(
        "header,expected",
        [
            (None, (3600, False)),
            ("", (3600, False)),
            ("no-cache", (0, False)),
            ("only-if-cached", (0, True)),
            ("max-age=60", (60, False)),
            ("Max-Age=0", (0, False)),
        ],
    )
    def test_directives(self, header, expected):
        assert parse_cache_control(header, 3600) == expected

    @pytest.mark.parametrize("header", ["max-age=-1", "max-age=abc", "no-store", "private"])
    def test_malformed(self, header):
        with pytest.raises(MalformedInputError):
            parse_cache_control(header, 3600)


class TestFetch:
    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, gateway, context, session):
        data = await gateway.fetch(REPORT_PATH, max_age=3600)

        assert data == b"a,b\n1,x\n"
        assert session.downloads == [(("Public Folders", "Daily Report"), None)]
        assert context.cache.get(cache_key(REPORT_PATH))[0] == data

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_remote(self, gateway, context, session):
        context.cache.put(cache_key(REPORT_PATH), b"cached\n")

        assert await gateway.fetch(REPORT_PATH, max_age=3600) == b"cached\n"
        gateway.open_session.assert_not_called()
        assert session.downloads == []

    @pytest.mark.asyncio
    async def test_max_age_zero_always_fetches(self, gateway, context, session):
        context.cache.put(cache_key(REPORT_PATH), b"cached\n")

        assert await gateway.fetch(REPORT_PATH, max_age=0) == b"a,b\n1,x\n"
        assert len(session.downloads) == 1

    @pytest.mark.asyncio
    async def test_stale_entry_refetched(self, gateway, context, session):
        key = cache_key(REPORT_PATH)
        context.cache.put(key, b"old\n")
        mtime = time.time() - 120
        os.utime(context.cache.directory / key, (mtime, mtime))

        assert await gateway.fetch(REPORT_PATH, max_age=60) == b"a,b\n1,x\n"
        assert context.cache.get(key) == (b"a,b\n1,x\n", 0)

    @pytest.mark.asyncio
    async def test_only_if_cached_uses_any_age(self, gateway, context):
        key = cache_key(REPORT_PATH)
        context.cache.put(key, b"old\n")
        mtime = time.time() - 100000
        os.utime(context.cache.directory / key, (mtime, mtime))

        assert await gateway.fetch(REPORT_PATH, only_if_cached=True) == b"old\n"
        gateway.open_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_only_if_cached_miss(self, gateway):
        with pytest.raises(NotCachedError):
            await gateway.fetch(REPORT_PATH, only_if_cached=True)
        gateway.open_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_prompt_answers_separate_entries(self, gateway, context, session):
        await gateway.fetch(REPORT_PATH, {"year": "2024"}, max_age=3600)
        await gateway.fetch(REPORT_PATH, {"year": "2025"}, max_age=3600)
        await gateway.fetch(REPORT_PATH, {"year": "2024"}, max_age=3600)

        assert session.downloads == [
            (("Public Folders", "Daily Report"), {"year": "2024"}),
            (("Public Folders", "Daily Report"), {"year": "2025"}),
        ]

    @pytest.mark.asyncio
    async def test_failed_fetch_writes_nothing(self, gateway, context, session):
        session.error = RemoteUnavailableError("down")

        with pytest.raises(RemoteUnavailableError):
            await gateway.fetch(REPORT_PATH, max_age=3600)
        assert context.cache.count() == 0

    @pytest.mark.asyncio
    async def test_folder_rendered_as_listing(self, gateway):
        data = await gateway.fetch(["bentonvisms", "public", "Attendance"])
        assert data == b"name,type\nArchive,folder\nBy School,report\n"

    @pytest.mark.asyncio
    async def test_short_path_rejected(self, gateway):
        with pytest.raises(MalformedInputError):
            await gateway.fetch(["bentonvisms"])


class TestPathMapping:
    @pytest.mark.asyncio
    async def test_public_uses_configured_user(self, gateway):
        await gateway.fetch(REPORT_PATH)
        gateway.open_session.assert_awaited_once_with("bentonvisms", "APSCN\\0401jpenn", "pw1")

    @pytest.mark.asyncio
    async def test_user_path_maps_to_my_folders(self, gateway, session):
        await gateway.fetch(["bentonvisms", "APSCN_other", "My Grades"])

        gateway.open_session.assert_awaited_once_with("bentonvisms", "APSCN\\other", "pw2")
        assert session.resolved == [("~", "My Grades")]

    @pytest.mark.asyncio
    async def test_unknown_user(self, gateway):
        with pytest.raises(UnknownUserError):
            await gateway.fetch(["bentonvisms", "APSCN_nobody", "My Grades"])
        gateway.open_session.assert_not_called()


class TestServe:
    @pytest.mark.asyncio
    async def test_csv_with_filename(self, gateway):
        response = await gateway.serve(REPORT_PATH)

        assert response.media_type == "text/csv"
        assert response.filename == "Daily Report.csv"
        assert response.body == b"a,b\n1,x\n"

    @pytest.mark.asyncio
    async def test_json_output(self, gateway):
        response = await gateway.serve(REPORT_PATH, as_json=True)

        assert response.media_type == "application/json"
        assert response.filename is None
        assert json.loads(response.body) == [{"a": 1, "b": "x"}]

    @pytest.mark.asyncio
    async def test_json_and_csv_share_cache_entry(self, gateway, session):
        await gateway.serve(REPORT_PATH, max_age=3600)
        await gateway.serve(REPORT_PATH, as_json=True, max_age=3600)
        assert len(session.downloads) == 1

    @pytest.mark.asyncio
    async def test_records_use(self, gateway, context):
        await gateway.serve(REPORT_PATH, prompt_answers={"year": "2024"})

        reports = await context.ledger.recently_used(60)
        assert [(r.path, r.prompt_answers) for r in reports] == [
            (REPORT_PATH, {"year": "2024"})
        ]

    @pytest.mark.asyncio
    async def test_failed_serve_not_recorded(self, gateway, context):
        with pytest.raises(NotCachedError):
            await gateway.serve(REPORT_PATH, only_if_cached=True)
        assert await context.ledger.recently_used(60) == []

    @pytest.mark.asyncio
    async def test_ledger_failure_does_not_fail_request(self, gateway, context):
        context.ledger = MagicMock()
        context.ledger.record_use = AsyncMock(return_value=False)

        response = await gateway.serve(REPORT_PATH)
        assert response.body == b"a,b\n1,x\n"


class TestWarm:
    @pytest.mark.asyncio
    async def test_refreshes_recent_reports(self, gateway, context, session):
        now = int(time.time())
        old_path = ["bentonvisms", "public", "Attendance"]
        await context.ledger.record_use(cache_key(REPORT_PATH), REPORT_PATH, used_at=now - 10)
        await context.ledger.record_use(cache_key(old_path), old_path, used_at=now - 100000)
        context.cache.put(cache_key(REPORT_PATH), b"stale\n")

        refreshed, failed = await gateway.warm(3600)

        assert (refreshed, failed) == (1, 0)
        assert context.cache.get(cache_key(REPORT_PATH))[0] == b"a,b\n1,x\n"
        assert context.cache.get(cache_key(old_path)) == (b"", -1)
        assert session.resolved == [("Public Folders", "Daily Report")]

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, gateway, context, session):
        now = int(time.time())
        missing = ["bentonvisms", "public", "Gone"]
        await context.ledger.record_use(cache_key(missing), missing, used_at=now)
        await context.ledger.record_use(cache_key(REPORT_PATH), REPORT_PATH, used_at=now)

        refreshed, failed = await gateway.warm(3600)

        assert (refreshed, failed) == (1, 1)
        assert context.cache.get(cache_key(REPORT_PATH))[0] == b"a,b\n1,x\n"

    @pytest.mark.asyncio
    async def test_warm_does_not_record_use(self, gateway, context):
        now = int(time.time())
        await context.ledger.record_use(cache_key(REPORT_PATH), REPORT_PATH, used_at=now - 50)

        await gateway.warm(3600)

        reports = await context.ledger.recently_used(3600)
        assert [r.last_used for r in reports] == [now - 50]


def test_folder_to_csv_quotes_names():
    folder = Folder(("x",), children={"a,b": Report(("x", "a,b"))})
    assert folder_to_csv(folder) == 'name,type\n"a,b",report\n'
