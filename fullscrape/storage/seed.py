"""Demo builds used to exercise the engine locally."""
from __future__ import annotations

from typing import Any, Dict, List

from fullscrape.storage.repository import Build, BuildRepository, BuildStatus

DEMO_PACKAGE: Dict[str, Any] = {
    "schemaVersion": "1.0",
    "packageId": "demo-headings",
    "description": "Collect page titles and first headings",
    "scraper": {
        "toolId": "scraper_fetch_css_v1",
        "parameters": {
            "selectors": {"title": "title", "heading": "h1"},
            "attribute": "text",
            "timeout_ms": 10000,
        },
    },
    "antiBlocking": [
        {"toolId": "antiblock_headers_v1", "parameters": {"extra_headers": {"Accept-Language": "en-US"}}},
    ],
}

DEMO_BUILDS: List[Dict[str, Any]] = [
    {
        "build_id": "demo-example-domains",
        "user_objective": "Collect the heading of each example domain",
        "target_urls": ["https://example.com/", "https://example.org/", "https://example.net/"],
    },
    {
        "build_id": "demo-iana",
        "user_objective": "Collect titles of IANA reference pages",
        "target_urls": [
            "https://www.iana.org/domains/reserved",
            "https://www.iana.org/help/example-domains",
        ],
    },
]


async def seed_builds(repository: BuildRepository) -> List[Build]:
    """Create the demo builds that are not yet stored, ready for scraping."""
    created: List[Build] = []
    for demo in DEMO_BUILDS:
        if await repository.find_build(demo["build_id"]) is not None:
            continue
        created.append(
            await repository.create_build(
                demo["target_urls"],
                user_objective=demo["user_objective"],
                final_package=DEMO_PACKAGE,
                status=BuildStatus.READY_FOR_SCRAPING,
                build_id=demo["build_id"],
            )
        )
    return created
