import asyncio

from fullscrape.orchestrator.error_classifier import ErrorClassifier
from fullscrape.storage.repository import BuildStatus, InMemoryBuildRepository, JsonBuildRepository
from fullscrape.storage.seed import DEMO_BUILDS, seed_builds
from fullscrape.tools.base import ToolResult


def test_in_memory_repository_updates_fields():
    repository = InMemoryBuildRepository()

    async def _run():
        build = await repository.create_build(["https://a.example"], user_objective="titles")
        await repository.update_error(build.build_id, ErrorClassifier().classify(build.build_id, "boom"))
        await repository.update_status(build.build_id, BuildStatus.FAILED)
        await repository.update_results(build.build_id, [ToolResult(url="https://a.example", success=False, error="boom")])
        missing = await repository.update_status("missing", BuildStatus.FAILED)
        return await repository.find_build(build.build_id), missing

    stored, missing = asyncio.run(_run())
    assert missing is None
    assert stored.status is BuildStatus.FAILED
    assert stored.error == "boom"
    assert stored.error_details["category"] == "scraping"
    assert stored.results == [{"url": "https://a.example", "success": False, "error": "boom"}]


def test_find_build_returns_a_copy():
    repository = InMemoryBuildRepository()

    async def _run():
        build = await repository.create_build(["https://a.example"], build_id="b1")
        build.target_urls.append("https://evil.example")
        return await repository.find_build("b1")

    assert asyncio.run(_run()).target_urls == ["https://a.example"]


def test_json_repository_survives_reload(tmp_path):
    path = tmp_path / "store" / "builds.json"

    async def _write():
        repository = JsonBuildRepository(path=path)
        created = await seed_builds(repository)
        again = await seed_builds(repository)
        await repository.update_status(created[0].build_id, BuildStatus.COMPLETED)
        return created, again

    created, again = asyncio.run(_write())
    assert len(created) == len(DEMO_BUILDS)
    assert again == []

    async def _read():
        return await JsonBuildRepository(path=path).find_build(created[0].build_id)

    reloaded = asyncio.run(_read())
    assert reloaded.status is BuildStatus.COMPLETED
    assert reloaded.final_package["scraper"]["toolId"] == "scraper_fetch_css_v1"
    assert reloaded.created_at == created[0].created_at


def test_update_status_keeps_error_unless_cleared():
    repository = InMemoryBuildRepository()

    async def _run():
        build = await repository.create_build(["https://a.example"], build_id="b2")
        await repository.update_error("b2", ErrorClassifier().classify("b2", "batch blew up"))
        await repository.update_status("b2", BuildStatus.SCRAPING_IN_PROGRESS)
        kept = await repository.find_build(build.build_id)
        await repository.update_status("b2", BuildStatus.COMPLETED, clear_error=True)
        return kept, await repository.find_build("b2")

    kept, cleared = asyncio.run(_run())
    assert kept.error == "batch blew up"
    assert cleared.status is BuildStatus.COMPLETED
    assert cleared.error is None
    assert cleared.error_details["message"] == "batch blew up"
