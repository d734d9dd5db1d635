"""Tests for origin payload normalization."""

from __future__ import annotations

import pytest

from racing_warehouse.scraping.normalize import (
    normalize_breeder,
    normalize_career,
    normalize_horse,
    normalize_person,
    normalize_race,
    normalize_races,
    parse_prize,
)


class TestParsePrize:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("1500 zł", 1500.0),
            ("1500", 1500.0),
            ("2,5 EUR", 10.625),
            ("12 000 Kč", 2160.0),
            ("100 XYZ", 100.0),
            ("n/a", 0.0),
            ("", 0.0),
        ],
    )
    def test_conversion(self, text, expected):
        assert parse_prize(text) == pytest.approx(expected)


class TestNormalizeCareer:
    def test_prize_rows_fold_into_season_above(self):
        raw = [
            {"raceYear": None, "prize": "999 zł"},
            {"raceYear": 2023, "raceType": "FLAT", "horseAge": 3, "raceCount": 4, "raceWonCount": 1},
            {"raceYear": None, "prize": "1000 zł"},
            {"raceYear": None, "prize": "10 EUR"},
            {"raceYear": 2024, "raceType": None, "raceCount": 2},
        ]
        rows = normalize_career(raw)

        assert [(r["race_year"], r["race_type"]) for r in rows] == [(2023, "FLAT"), (2024, None)]
        assert rows[0]["prize_amounts"] == pytest.approx(1042.5)
        assert rows[0]["race_won_count"] == 1
        assert rows[0]["prize_currencies"] == "PLN"
        assert rows[1]["prize_amounts"] == 0.0

    def test_repeated_season_merges(self):
        raw = [
            {"raceYear": 2023, "raceType": "FLAT", "raceCount": 4},
            {"raceYear": None, "prize": "100"},
            {"raceYear": 2023, "raceType": "FLAT", "raceCount": 9},
            {"raceYear": None, "prize": "50"},
        ]
        (row,) = normalize_career(raw)
        assert row["race_count"] == 4
        assert row["prize_amounts"] == 150.0

    def test_not_a_list(self):
        assert normalize_career({"data": None}) == []
        assert normalize_career(None) == []


class TestNormalizeRace:
    RACE = {
        "horse": {"id": 7},
        "order": 3,
        "place": 1,
        "jockeyWeight": 56.5,
        "prize": 2000,
        "jockey": {"id": 11},
        "trainer": {"id": 12},
        "race": {
            "id": 100,
            "number": 4,
            "name": "Derby",
            "date": "2024-06-30",
            "currency": {"code": "PLN", "symbol": "zł"},
            "trackDistance": 2400,
            "category": {"id": 2, "horseBreed": "xx", "name": "Gr. I"},
            "country": {"alfa3": "POL"},
            "city": {"name": "Warszawa"},
            "trackType": {"name": "turf"},
            "style": {"name": "gallop"},
            "payments": {"win": 2.5},
        },
    }

    def test_fields(self):
        rec = normalize_race(self.RACE)
        assert rec["horse_id"] == 7
        assert rec["race_id"] == 100
        assert rec["start_order"] == 3
        assert rec["finish_place"] == 1
        assert rec["prize_currency"] == rec["currency_code"] == "PLN"
        assert rec["currency_symbol"] == "zł"
        assert rec["category_breed"] == "xx"
        assert rec["country_code"] == "POL"
        assert rec["track_type"] == "turf"
        assert rec["race_style"] == "gallop"
        assert rec["payments"] == {"win": 2.5}
        assert rec["weather"] is None

    def test_unplaced_and_falsy(self):
        rec = normalize_race({"place": 0, "order": 0, "race": {}})
        assert rec["finish_place"] == "UNKNOWN"
        assert rec["start_order"] is None
        assert rec["race_id"] is None

    def test_races_skip_non_objects(self):
        assert len(normalize_races([self.RACE, "junk", None])) == 1
        assert normalize_races("junk") == []


class TestNormalizeEntities:
    def test_horse(self):
        detail = {
            "name": "Alpha",
            "suffix": "POL",
            "dateOfBirth": 2019,
            "mother": {"id": 3},
            "father": {"id": 4},
            "breeders": [{"id": 9}],
            "color": {"polishName": "gniada", "englishName": "bay"},
            "horseFromPolishBreeding": True,
            "raceOwners": [],
        }
        career = {"data": [{"raceYear": 2023, "raceType": "FLAT"}]}
        rec = normalize_horse(7, detail, career, [TestNormalizeRace.RACE])

        assert rec["horse_id"] == 7
        assert rec["horse_name"] == "Alpha"
        assert (rec["mother_id"], rec["father_id"], rec["breeder_id"]) == (3, 4, 9)
        assert rec["color_name_en"] == "bay"
        assert rec["polish_breeding"] is True
        assert rec["foreign_training"] is False
        assert rec["owner_name"] is None
        assert len(rec["career"]) == 1
        assert rec["races"][0]["race_id"] == 100

    def test_person(self):
        rec = normalize_person(
            "jockey_id", 5, {"firstName": "Jan", "lastName": "", "licenceCountry": {"alfa3": "POL"}}
        )
        assert rec == {
            "jockey_id": 5,
            "first_name": "Jan",
            "last_name": None,
            "licence_country": "POL",
        }

    def test_breeder(self):
        assert normalize_breeder(9, {"name": "Stud", "city": "Krakow"}) == {
            "breeder_id": 9,
            "name": "Stud",
            "city": "Krakow",
        }
