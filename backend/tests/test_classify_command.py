"""
Unit tests for the classify_scan debugging command.
"""

import pytest
from fakes import FakeProvider, classification

from ideascan.core.commands import classify_scan
from ideascan.core.database.models import SCAN_COMPLETED, Classification


@pytest.fixture
def providers():
    return [
        FakeProvider("anthropic-haiku", classify=lambda r: classification("keep", 0.9)),
        FakeProvider("openai-gpt4-mini", classify=lambda r: classification("keep", 0.85)),
    ]


class TestSelectProviderNames:
    """Test --provider slot selection."""

    CONFIGURED = ["anthropic-haiku", "openai-gpt4-mini"]

    @pytest.mark.parametrize("choice,expected", [
        ("both", ["anthropic-haiku", "openai-gpt4-mini"]),
        ("primary", ["anthropic-haiku"]),
        ("secondary", ["openai-gpt4-mini"]),
    ])
    def test_choices(self, choice, expected):
        assert classify_scan.select_provider_names(choice, self.CONFIGURED) == expected

    def test_secondary_requires_two_providers(self):
        with pytest.raises(ValueError, match="No secondary"):
            classify_scan.select_provider_names("secondary", ["anthropic-haiku"])

    def test_unknown_choice(self):
        with pytest.raises(ValueError):
            classify_scan.select_provider_names("all", self.CONFIGURED)


class TestClassifyCommand:
    """Test classify_scan.main()."""

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db, seed, providers):
        """Test a dry run reports decisions without touching the database."""
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_COMPLETED)
        item_id = await seed.item(topic_id, scan_id, title="Need a scheduling tool")
        await seed.classification(item_id, scan_id, "discard", score=0.0)

        summaries = await classify_scan.main(scan_id=scan_id, dry_run=True, database=db, providers=providers)

        assert summaries == [{
            "item_id": item_id,
            "title": "Need a scheduling tool",
            "decision": "keep",
            "score": pytest.approx(1.0),
            "path": "consensus",
            "written": False,
        }]
        assert (await seed.classification_for(item_id)).final_decision == "discard"
        assert all(p.closed for p in providers)

    @pytest.mark.asyncio
    async def test_replaces_existing_classification(self, db, seed, providers):
        """Test a real run replaces the stored decision for the item."""
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_COMPLETED, items_classified=1)
        item_id = await seed.item(topic_id, scan_id)
        await seed.classification(item_id, scan_id, "discard", score=0.0)

        summaries = await classify_scan.main(item_id=item_id, database=db, providers=providers)

        assert summaries[0]["written"] is True
        assert await seed.count(Classification) == 1
        row = await seed.classification_for(item_id)
        assert row.final_decision == "keep"
        assert str(row.scan_id) == scan_id
        assert (await seed.get_scan(scan_id)).items_classified == 1

    @pytest.mark.asyncio
    async def test_limit(self, db, seed, providers):
        topic_id = await seed.topic()
        scan_id = await seed.scan(topic_id, status=SCAN_COMPLETED)
        for _ in range(3):
            await seed.item(topic_id, scan_id)

        summaries = await classify_scan.main(scan_id=scan_id, limit=2, dry_run=True, database=db, providers=providers)

        assert len(summaries) == 2

    @pytest.mark.asyncio
    async def test_target_required(self, db, providers):
        with pytest.raises(ValueError):
            await classify_scan.main(database=db, providers=providers)
