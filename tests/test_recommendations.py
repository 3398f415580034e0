from datetime import datetime, timedelta, timezone

import pytest

import adoptipet.recommendations as recommendations
from adoptipet.collection import MemoryDatabase
from adoptipet.models import RecommendationRequest

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

LISTER = {
    "_id": "u1",
    "name": "Ana",
    "email": "ana@example.com",
    "password": "hunter22",
    "role": "user",
    "photo": "https://example.com/ana.jpg",
}


def _days_ago(days):
    return NOW - timedelta(days=days)


def _database(pets):
    database = MemoryDatabase()
    database.collection("users").insert_many([LISTER])
    database.collection("allPets").insert_many(pets)
    return database


def _pet(pet_id, days, location="Mirpur, Dhaka", category="Dog", adopted=False, **extra):
    pet = {
        "_id": pet_id,
        "pet_name": pet_id.title(),
        "category": category,
        "adopted": adopted,
        "created_at": _days_ago(days),
        "added_by": "u1",
        **extra,
    }
    if location is not None:
        pet["location"] = location
    return pet


def _ids(results):
    return [doc["_id"] for doc in results]


def test_basic_filters_and_orders_by_recency():
    pets = _database(
        [
            _pet("older", 3, location="Dhaka"),
            _pet("newer", 1),
            _pet("cat", 0, category="Cat"),
            _pet("elsewhere", 0, location="Chittagong"),
            _pet("adopted", 0, adopted=True),
            _pet("nowhere", 0, location=None),
        ]
    ).collection("allPets")

    results = recommendations.recommend(pets, ["Dog"], "dhaka", 12)

    assert _ids(results) == ["newer", "older"]


def test_basic_joins_public_lister_profile():
    pets = _database([_pet("rex", 1)]).collection("allPets")

    [result] = recommendations.recommend(pets, "Dog", "Dhaka")

    assert result["added_by"] == {
        "_id": "u1",
        "name": "Ana",
        "role": "user",
        "photo": "https://example.com/ana.jpg",
    }
    assert "_lister_id" not in result


def test_basic_truncates_to_limit():
    pets = _database([_pet(f"p{i}", i) for i in range(5)]).collection("allPets")
    assert _ids(recommendations.recommend(pets, ["Dog"], "Dhaka", 2)) == ["p0", "p1"]


def test_location_hint_is_a_literal_substring():
    pets = _database([_pet("rex", 1, location="Block (C), Dhaka")]).collection("allPets")
    assert _ids(recommendations.recommend(pets, ["Dog"], "(c)", 5)) == ["rex"]
    assert recommendations.recommend(pets, ["Dog"], ".*", 5) == []


def test_multiple_categories():
    pets = _database(
        [_pet("dog", 2), _pet("cat", 1, category="Cat"), _pet("bird", 0, category="Bird")]
    ).collection("allPets")
    assert _ids(recommendations.recommend(pets, "Dog,Cat", "Dhaka")) == ["cat", "dog"]


def test_no_categories_matches_nothing():
    pets = _database([_pet("rex", 1)]).collection("allPets")
    assert recommendations.recommend(pets, None, "Dhaka") == []


def test_advanced_prefers_fresh_listings():
    pets = _database([_pet("old", 15), _pet("fresh", 0)]).collection("allPets")

    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", 12, now=NOW)

    assert _ids(results) == ["fresh", "old"]


def test_advanced_prefers_location_match_at_equal_freshness():
    pets = _database(
        [_pet("unknown", 2, location=None), _pet("near", 2, location="Gulshan, Dhaka")]
    ).collection("allPets")

    results = recommendations.recommend_advanced(pets, ["Dog"], "dhaka", 12, now=NOW)

    assert _ids(results) == ["near", "unknown"]


def test_advanced_excludes_other_locations_but_keeps_missing_ones():
    pets = _database(
        [_pet("sylhet", 0, location="Sylhet"), _pet("unknown", 1, location=None)]
    ).collection("allPets")

    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", now=NOW)

    assert _ids(results) == ["unknown"]


def test_advanced_breaks_score_ties_by_recency():
    # 10 + (10 - 5) == 5 + (10 - 0)
    pets = _database(
        [_pet("near_older", 5), _pet("unknown_newer", 0, location=None)]
    ).collection("allPets")

    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", now=NOW)

    assert _ids(results) == ["unknown_newer", "near_older"]


def test_naive_timestamps_are_read_as_utc():
    naive = _pet("naive", 1)
    naive["created_at"] = naive["created_at"].replace(tzinfo=None)
    pets = _database([_pet("older", 3), naive, _pet("fresh", 0)]).collection("allPets")

    assert _ids(recommendations.recommend(pets, ["Dog"], "Dhaka")) == ["fresh", "naive", "older"]
    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", now=NOW)
    assert _ids(results) == ["fresh", "naive", "older"]
    naive_now = NOW.replace(tzinfo=None)
    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", now=naive_now)
    assert _ids(results) == ["fresh", "naive", "older"]


def test_advanced_strips_scores_and_private_lister_fields():
    pets = _database(
        [
            _pet("embedded", 1, added_by={"_id": "u1", "email": "ana@example.com"}),
            _pet("stranger", 2, added_by={"_id": "u404", "email": "x@example.com"}),
            _pet("plain", 3),
        ]
    ).collection("allPets")

    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", now=NOW)

    assert _ids(results) == ["embedded", "stranger", "plain"]
    for result in results:
        for key in ("locationScore", "freshnessScore", "totalScore", "_lister_id"):
            assert key not in result
        lister = result.get("added_by", {})
        assert "password" not in lister
        assert "email" not in lister
    assert "added_by" not in results[1]


def test_advanced_limit_defaults_on_bad_input():
    pets = _database([_pet(f"p{i}", i) for i in range(14)]).collection("allPets")
    results = recommendations.recommend_advanced(pets, ["Dog"], "Dhaka", "lots", now=NOW)
    assert len(results) == 12


def test_advanced_pipeline_shape():
    request = RecommendationRequest(categories={"Dog"}, location_hint="Dhaka", limit=4)
    pipeline = recommendations.build_advanced_pipeline(request, "users", now=NOW)

    assert pipeline[0]["$match"]["$or"][1] == {"location": {"$exists": False}}
    assert {"$sort": {"totalScore": -1, "created_at": -1}} in pipeline
    assert {"$limit": 4} in pipeline
    final = pipeline[-1]["$project"]
    for key in ("locationScore", "freshnessScore", "totalScore", "added_by.password", "added_by.email"):
        assert final[key] == 0


def test_limit_is_capped():
    request = recommendations.build_request(["Dog"], "Dhaka", 10_000)
    assert request.limit == recommendations.MAX_RECOMMENDATION_LIMIT


class FailingCollection:
    name = "allPets"

    def aggregate(self, pipeline):
        raise RuntimeError("boom")


@pytest.mark.parametrize("ranker", [recommendations.recommend, recommendations.recommend_advanced])
def test_store_failure_is_wrapped(ranker):
    with pytest.raises(recommendations.RecommendationError) as info:
        ranker(FailingCollection(), ["Dog"], "Dhaka")
    assert info.value.message == "boom"
    assert str(info.value) == "Failed to fetch recommendations: boom"
    assert isinstance(info.value.__cause__, RuntimeError)
