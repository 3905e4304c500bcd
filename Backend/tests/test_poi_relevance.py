from __future__ import annotations

import pytest

from services.poi_relevance import calculate_relevance_score, dedupe_by_proximity, sort_by_relevance
from tests.fixtures import make_poi

POSITIVE_TAGS = {
    "wikipedia": "fr:Tour Eiffel",
    "wikidata": "Q243",
    "heritage": "2",
    "tourism": "attraction",
    "website": "https://example.com",
    "opening_hours": "24/7",
    "image": "https://img",
    "wikimedia_commons": "File:x.jpg",
    "photo": "yes",
    "leisure": "park",
    "name": "Parc",
    "historic": "monument",
    "tourism:type": "photo_spot",
    "scenic": "yes",
    "instagram:ref": "eiffel",
    "natural": "peak",
    "place": "square",
    "area": "20000",
}


def test_enriched_landmark_outranks_bare_node():
    rich = make_poi(type_="monument", wikipedia="x", heritage="1", historic="monument")
    bare = make_poi(type_="other")
    assert calculate_relevance_score(rich) > calculate_relevance_score(bare)


def test_unnamed_non_area_is_penalized():
    named = make_poi(name="Bench")
    unnamed = make_poi(name=" ")
    assert calculate_relevance_score(unnamed) < calculate_relevance_score(named)
    assert calculate_relevance_score(make_poi(name=" ", leisure="park")) > calculate_relevance_score(unnamed)


@pytest.mark.parametrize("type_", ["other", "viewpoint", "park"])
@pytest.mark.parametrize("name", ["Named", " "])
@pytest.mark.parametrize("tag", sorted(POSITIVE_TAGS))
def test_adding_a_positive_tag_never_lowers_the_score(type_, name, tag):
    base_tags = {"amenity": "bench"}
    before = make_poi(name=name, type_=type_, tags=base_tags)
    after = make_poi(name=name, type_=type_, tags={**base_tags, tag: POSITIVE_TAGS[tag]})
    assert calculate_relevance_score(after) >= calculate_relevance_score(before)


def test_dedupe_only_checks_against_existing_results():
    overpass = [make_poi("overpass-node-1", lat=48.8584, lon=2.2945)]
    nominatim = [
        make_poi("nominatim-1", lat=48.85842, lon=2.29452, source="nominatim"),
        make_poi("nominatim-2", lat=48.8620, lon=2.2886, source="nominatim"),
        make_poi("nominatim-3", lat=48.86201, lon=2.28861, source="nominatim"),
    ]
    added = dedupe_by_proximity(overpass, nominatim, 50)
    assert [p.id for p in added] == ["nominatim-2", "nominatim-3"]


def test_sort_by_score_then_distance():
    center = (48.8584, 2.2945)
    far_rich = make_poi("a", lat=48.87, lon=2.30, type_="viewpoint")
    near_plain = make_poi("b", lat=48.8585, lon=2.2946)
    far_plain = make_poi("c", lat=48.88, lon=2.31)
    ordered = sort_by_relevance([far_plain, near_plain, far_rich], *center)
    assert [p.id for p in ordered] == ["a", "b", "c"]
