from datetime import timedelta

import pytest

from dupkite.reader import ReportFilters, ReportReader


@pytest.fixture
def reader(store, storage):
    return ReportReader(store, storage, "pothole-photos", limit=1000)


async def test_only_verified_reports_newest_first(reader, store, clock):
    older = store.add(created_at=clock() - timedelta(hours=2))
    newer = store.add(created_at=clock() - timedelta(hours=1))
    store.add(verified=False)

    reports = await reader.list(ReportFilters())

    assert [r.id for r in reports] == [newer["id"], older["id"]]


async def test_photos_are_joined_and_missing_photos_give_empty_list(reader, store):
    with_photo = store.add()
    without_photo = store.add()
    store.add_photo(with_photo["id"], f"{with_photo['id']}/1-0.jpg")

    reports = {r.id: r for r in await reader.list(ReportFilters())}

    assert [p.storage_path for p in reports[with_photo["id"]].photos] == [f"{with_photo['id']}/1-0.jpg"]
    assert reports[with_photo["id"]].photos[0].url.endswith(f"/pothole-photos/{with_photo['id']}/1-0.jpg")
    assert reports[without_photo["id"]].photos == []


async def test_filters(reader, store):
    light = store.add(category="street_light", settlement="Goran")
    store.add(category="pothole", settlement="Goran")
    store.add(category="street_light", settlement="Lovech", municipality="Troyan")

    reports = await reader.list(ReportFilters.from_query("street_light", " Goran ", " Lovech "))

    assert [r.id for r in reports] == [light["id"]]


def test_unknown_category_and_blank_filters_are_ignored():
    filters = ReportFilters.from_query("graffiti", "  ", None)
    assert filters == ReportFilters(category=None, settlement=None, municipality=None)


async def test_read_ceiling(store, storage, clock):
    for minutes in range(5):
        store.add(created_at=clock() - timedelta(minutes=minutes))
    reader = ReportReader(store, storage, "pothole-photos", limit=3)
    assert len(await reader.list(ReportFilters())) == 3


async def test_photo_lookup_failure_degrades_to_empty_photos(reader, store):
    report = store.add()
    store.add_photo(report["id"], f"{report['id']}/1-0.jpg")
    store.fail_on.add("fetch_photos")

    [listed] = await reader.list(ReportFilters())

    assert listed.photos == []


async def test_labels_follow_category(reader, store):
    store.add(category="fallen_tree", severity=3, status="in_progress")
    [listed] = await reader.list(ReportFilters())
    assert listed.severity_label == "Паднало дърво / блокира пътя"
    assert listed.category_label == "Паднали клони / дървета"
    assert listed.status_label == "В процес"
