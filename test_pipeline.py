"""
Tests for the blacklist pre-filter and AI classification pipeline.
"""

import pytest

from conftest import FakeClassifier, make_record
from regwatch.audit.pipeline import ClassificationPipeline
from regwatch.models import DEFAULT_MODULE_TYPE, AuditItem, FilterCriteria, RiskLevel
from regwatch.repository import InMemoryRecordRepository


@pytest.fixture
async def blacklisted(blacklist):
    await blacklist.add_keywords(["InvalidSyn"])
    return blacklist


def by_id(result):
    return {item.entity_id: item for item in result.audit_items}


async def test_preview_blacklist_and_classification(pipeline, classifier, blacklisted):
    result = await pipeline.preview_with_blacklist_check(FilterCriteria())

    assert result.total == 5
    assert result.blacklist_filtered == 1
    assert result.ai_judged == 4
    assert result.ai_kept == 3
    assert result.ai_downgraded == 1
    assert result.failed_count == 0
    assert result.suggested_blacklist == ["Omnia Medical"]

    # blacklisted record never reaches the classifier
    assert len(classifier.calls) == 4
    assert not any("InvalidSyn" in text for text in classifier.calls)

    items = by_id(result)
    spam = items["4"]
    assert spam.blacklist_matched
    assert spam.matched_blacklist_keyword == "InvalidSyn"
    assert spam.suggested_risk_level == RiskLevel.LOW
    assert spam.confidence == 1.0
    assert spam.ai_label is None
    assert spam.remark == "Blacklist match: 'InvalidSyn', downgraded to LOW"

    related = items["0"]
    assert related.ai_label is True
    assert related.suggested_risk_level == RiskLevel.HIGH
    assert related.suggested_blacklist == []
    assert related.remark == "AI judgment: related, confidence 92.0%, category: skin analysis"

    unrelated = items["3"]
    assert unrelated.ai_label is False
    assert unrelated.suggested_risk_level == RiskLevel.LOW
    assert unrelated.suggested_blacklist == ["Omnia Medical"]
    assert unrelated.remark.endswith("suggested blacklist: Omnia Medical")


async def test_preview_writes_nothing(pipeline, repository, pending):
    await pipeline.preview_with_blacklist_check(FilterCriteria())

    assert repository.get("DEVICE_510K", "3").risk_level == RiskLevel.MEDIUM
    assert repository.get("DEVICE_510K", "3").remark is None
    assert await pending.count() == 0


async def test_classifier_failures_are_counted(repository, blacklist, pending):
    failing = FakeClassifier(fail_words=("blood",))
    pipeline = ClassificationPipeline(repository, failing, blacklist, pending)

    result = await pipeline.preview_with_blacklist_check(FilterCriteria())
    assert result.failed_count == 1
    assert result.total == 5
    assert len(result.audit_items) == 4
    assert "3" not in by_id(result)


async def test_preview_limit(blacklist, pending, classifier):
    repository = InMemoryRecordRepository(make_record(i) for i in range(60))
    pipeline = ClassificationPipeline(repository, classifier, blacklist, pending)

    assert (await pipeline.preview_with_blacklist_check(FilterCriteria())).total == 50
    assert (await pipeline.preview_with_blacklist_check(FilterCriteria(limit=10))).total == 10
    assert (await pipeline.preview_with_blacklist_check(FilterCriteria(judge_all=True))).total == 60


async def test_criteria_filtering(pipeline, repository):
    await repository.save(make_record(9, entity_type="DEVICE_RECALL"))
    result = await pipeline.preview_with_blacklist_check(FilterCriteria(entity_types=["DEVICE_RECALL"]))
    assert [item.entity_id for item in result.audit_items] == ["9"]


async def test_execute_smart_audit(pipeline, repository, blacklisted):
    preview = await pipeline.preview_with_blacklist_check(FilterCriteria())
    missing = AuditItem(entity_type="DEVICE_510K", entity_id="missing")

    result = await pipeline.execute_smart_audit(preview.audit_items + [missing])
    assert result.kept_count == 3
    assert result.downgraded_count == 2
    assert result.failed_count == 1
    # found records are written in a single batch
    assert repository.batches == [5]

    kept = repository.get("DEVICE_510K", "0")
    assert kept.risk_level == RiskLevel.MEDIUM
    assert kept.remark.startswith("AI judgment: related")
    assert repository.get("DEVICE_510K", "3").risk_level == RiskLevel.LOW
    assert repository.get("DEVICE_510K", "4").risk_level == RiskLevel.LOW


async def test_stage_overwrites_previous_judgment(pipeline, pending, classifier, blacklisted):
    _, staged = await pipeline.judge_and_stage(FilterCriteria())
    assert staged.saved_count == 5
    assert await pending.count() == 5

    first = await pending.find(DEFAULT_MODULE_TYPE, "DEVICE_510K", "0")
    assert first.suggested_risk_level == RiskLevel.HIGH

    classifier.related_words = ()
    await pipeline.judge_and_stage(FilterCriteria())

    assert await pending.count() == 5
    second = await pending.find(DEFAULT_MODULE_TYPE, "DEVICE_510K", "0")
    assert second.suggested_risk_level == RiskLevel.LOW
    assert second.judge_result["isRelated"] is False

    blacklisted_judgment = await pending.find(DEFAULT_MODULE_TYPE, "DEVICE_510K", "4")
    assert blacklisted_judgment.filtered_by_blacklist
    assert blacklisted_judgment.blacklist_keywords == ["InvalidSyn"]


async def test_accepted_keywords_filter_next_preview(pipeline, classifier):
    preview = await pipeline.preview_with_blacklist_check(FilterCriteria())
    assert await pipeline.accept_suggested_keywords(preview.suggested_blacklist) == 2

    classifier.calls.clear()
    again = await pipeline.preview_with_blacklist_check(FilterCriteria())
    assert preview.suggested_blacklist == ["Omnia Medical", "Spam"]
    assert by_id(again)["3"].matched_blacklist_keyword == "Omnia Medical"
    assert by_id(again)["4"].matched_blacklist_keyword == "Spam"
    assert len(classifier.calls) == 3
