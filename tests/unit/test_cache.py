"""Tests for the on-disk cache and output files."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ekat.core.errors import CacheIOError, DecodeError
from ekat.core.types import (
    CadastralMunicipality,
    Captcha,
    CaptchaSample,
    CaptchaType,
    MergedStreet,
    Municipality,
    SearchResult,
    Settlement,
    Street,
)
from ekat.storage.cache import (
    StreetCache,
    atomic_write_bytes,
    load_municipalities,
    save_captcha,
    save_json,
    save_municipalities,
    save_settlements,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestAtomicWrite:
    def test_writes_and_creates_parents(self, tmp_path):
        path = tmp_path / "a" / "b" / "out.json"
        atomic_write_bytes(path, b"{}")
        assert path.read_bytes() == b"{}"

    def test_no_temp_file_left(self, tmp_path):
        atomic_write_bytes(tmp_path / "out.json", b"1")
        assert [p.name for p in tmp_path.iterdir()] == ["out.json"]

    def test_overwrite(self, tmp_path):
        path = tmp_path / "out.json"
        atomic_write_bytes(path, b"old")
        atomic_write_bytes(path, b"new")
        assert path.read_bytes() == b"new"

    def test_failed_rename_keeps_old_file(self, tmp_path):
        path = tmp_path / "out.json"
        atomic_write_bytes(path, b"old")

        with patch("ekat.storage.cache.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(CacheIOError, match="disk full"):
                atomic_write_bytes(path, b"new")

        assert path.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["out.json"]

    def test_save_json_writes_both_forms(self, tmp_path):
        save_json({"a": "š"}, tmp_path, "x")
        assert (tmp_path / "x.json").read_text(encoding="utf-8") == '{\n  "a": "š"\n}\n'
        assert (tmp_path / "x.min.json").read_text(encoding="utf-8") == '{"a":"š"}'


class TestStreetCache:
    def test_resolved_after_save(self, tmp_path):
        cache = StreetCache(tmp_path, 80438)
        assert not cache.is_resolved("АБ")

        path = cache.save(SearchResult(query="АБ", results=[Street(1, "A, B")], updated_at=T0))

        assert cache.is_resolved("АБ")
        assert path == tmp_path / "80438" / "ab.json"

    def test_load_round_trip(self, tmp_path):
        cache = StreetCache(tmp_path, 1)
        result = SearchResult(query="ЧА", results=[Street(7, "TOWN1, MAINST")], updated_at=T0)
        path = cache.save(result)
        assert cache.load(path) == result

    def test_file_contents(self, tmp_path):
        cache = StreetCache(tmp_path, 1)
        path = cache.save(SearchResult(query="AB", results=[Street(7, "T, S")], updated_at=T0))
        assert json.loads(path.read_text(encoding="utf-8")) == {
            "query": "AB",
            "results": [{"id": 7, "full_name": "T, S"}],
            "updated_at": "2024-03-01T12:00:00+00:00",
        }

    def test_files_ignores_temp_files(self, tmp_path):
        cache = StreetCache(tmp_path, 1)
        cache.save(SearchResult(query="AB", updated_at=T0))
        (cache.directory / ".ba.json.abc123.tmp").write_bytes(b"{")

        assert [p.name for p in cache.files()] == ["ab.json"]

    def test_files_missing_directory(self, tmp_path):
        with pytest.raises(CacheIOError):
            StreetCache(tmp_path, 404).files()

    def test_load_malformed(self, tmp_path):
        cache = StreetCache(tmp_path, 1)
        path = cache.directory / "bad.json"
        path.parent.mkdir(parents=True)
        path.write_text('{"query": "AB"}', encoding="utf-8")

        with pytest.raises(DecodeError):
            cache.load(path)

    def test_stat_error(self, tmp_path):
        cache = StreetCache(tmp_path, 1)
        with patch("ekat.storage.cache.os.stat", side_effect=PermissionError("denied")):
            with pytest.raises(CacheIOError, match="denied"):
                cache.is_resolved("AB")


class TestOutputs:
    def test_save_settlements(self, tmp_path):
        settlements = [
            Settlement(name="TOWN1", updated_at=T0, streets=[MergedStreet(7, "MAINST", T0)]),
        ]
        path = save_settlements(settlements, tmp_path, 80438)

        assert path == tmp_path / "municipalities" / "80438" / "settlements+streets.json"
        assert (path.parent / "settlements+streets.min.json").exists()
        assert json.loads(path.read_text(encoding="utf-8")) == [
            {
                "name": "TOWN1",
                "updated_at": "2024-03-01T12:00:00+00:00",
                "streets": [{"id": 7, "name": "MAINST", "updated_at": "2024-03-01T12:00:00+00:00"}],
            }
        ]

    def test_save_captcha(self, tmp_path):
        sample = CaptchaSample(data=b"\xff\xd8jpeg", sha1="abc", content_type="image/jpeg", generated_at=T0)
        captcha = Captcha(id="X", type=CaptchaType.ALPHANUM_4, quota=1, samples=[sample])

        path = save_captcha(captcha, tmp_path)

        assert (tmp_path / "samples" / "abc.jpg").read_bytes() == b"\xff\xd8jpeg"
        assert json.loads(path.read_text(encoding="utf-8")) == {
            "id": "X",
            "type": "ALPHANUM_4",
            "samples": [
                {"sha1": "abc", "content_type": "image/jpeg", "generated_at": "2024-03-01T12:00:00+00:00"}
            ],
        }

    def test_municipalities_round_trip(self, tmp_path):
        municipalities = [
            Municipality(
                id=80438,
                name="NOVI SAD",
                cadastral_municipalities=[CadastralMunicipality(id=801, name="NOVI SAD I", type=3)],
            ),
            Municipality(id=70181, name="BEOGRAD"),
        ]
        path = save_municipalities(municipalities, tmp_path)

        assert load_municipalities(path) == municipalities
        assert json.loads((tmp_path / "municipalities" / "ids.json").read_text()) == [80438, 70181]
        assert (tmp_path / "municipalities" / "80438.json").exists()
        assert (tmp_path / "municipalities" / "70181.min.json").exists()

    def test_load_municipalities_not_a_list(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text("{}", encoding="utf-8")
        with pytest.raises(DecodeError, match="list"):
            load_municipalities(path)
