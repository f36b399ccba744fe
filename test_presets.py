"""
Tests for preset CRUD and validation.
"""

import pytest

from conftest import CRAWLER, VALID_PARAMS
from regwatch.errors import NotFoundError, ValidationError
from regwatch.models import PresetRequest, PresetUpdate


def request(**overrides):
    data = {"crawler_name": CRAWLER, "name": "skin-daily", "parameters": VALID_PARAMS}
    data.update(overrides)
    return PresetRequest(**data)


async def test_create_and_get(presets):
    preset = await presets.create(request(description="daily sweep"))
    assert preset.id > 0
    assert preset.parameters == VALID_PARAMS
    assert preset.enabled is True

    fetched = await presets.get(preset.id)
    assert fetched == preset


async def test_invalid_parameters_are_not_stored(presets):
    with pytest.raises(ValidationError) as excinfo:
        await presets.create(request(parameters={"maxRecords": "lots"}))
    assert set(excinfo.value.field_errors) == {"maxRecords", "deviceNames"}
    assert await presets.list() == []


async def test_unknown_crawler_and_blank_name(presets):
    with pytest.raises(ValidationError):
        await presets.create(request(crawler_name="KR_510K"))
    with pytest.raises(ValidationError):
        await presets.create(request(name="   "))


async def test_validate(presets):
    assert presets.validate(CRAWLER, VALID_PARAMS) is True
    assert presets.validate(CRAWLER, {}) is False
    assert presets.validate("KR_510K", VALID_PARAMS) is False


async def test_update_revalidates(presets):
    preset = await presets.create(request())

    updated = await presets.update(preset.id, PresetUpdate(
        parameters={"deviceNames": ["dermatoscope"], "recentDays": 7},
        enabled=False,
    ))
    assert updated.parameters == {"deviceNames": ["dermatoscope"], "recentDays": 7}
    assert updated.enabled is False
    assert updated.updated_at >= preset.updated_at

    with pytest.raises(ValidationError):
        await presets.update(preset.id, PresetUpdate(parameters={"recentDays": 0}))
    assert (await presets.get(preset.id)).parameters == updated.parameters


async def test_copy_starts_disabled(presets):
    preset = await presets.create(request())
    copy = await presets.copy(preset.id, "skin-weekly")
    assert copy.id != preset.id
    assert copy.enabled is False
    assert copy.parameters == preset.parameters
    assert copy.description == "Copied from skin-daily"


async def test_list_filters(presets):
    first = await presets.create(request())
    await presets.create(request(name="disabled", enabled=False))

    assert [p.id for p in await presets.list(enabled=True)] == [first.id]
    assert len(await presets.list(crawler_name=CRAWLER)) == 2
    assert await presets.list(crawler_name="EU_Recall") == []


async def test_delete(presets):
    preset = await presets.create(request())
    await presets.delete(preset.id)
    with pytest.raises(NotFoundError):
        await presets.get(preset.id)
    with pytest.raises(NotFoundError):
        await presets.delete(preset.id)


async def test_delete_refused_while_tasks_use_preset(presets, scheduler):
    preset = await presets.create(request())
    task = await scheduler.add("0 3 * * *", preset_id=preset.id)
    await scheduler.pause(task.id)

    with pytest.raises(ValidationError) as excinfo:
        await presets.delete(preset.id)
    assert excinfo.value.field_errors["preset_id"].startswith(f"referenced by task(s) #{task.id}")
    assert (await presets.get(preset.id)).id == preset.id

    await scheduler.delete(task.id)
    await presets.delete(preset.id)
    with pytest.raises(NotFoundError):
        await presets.get(preset.id)
