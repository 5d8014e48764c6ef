"""Tests for settings and order model helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from freezegun import freeze_time

from keepr.config import Settings
from keepr.models import Order, is_storage_id, new_storage_id, utcnow_iso


class TestSettings:
    def test_missing_ingest_config(self):
        s = Settings(_env_file=None, addpipe_api_key="", aws_bucket_name="b", aws_region="")
        assert s.missing_ingest_config() == ["ADDPIPE_API_KEY", "AWS_REGION"]

    def test_complete(self, settings):
        assert settings.missing_ingest_config() == []

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("DOWNLOAD_ATTEMPTS", "7")
        monkeypatch.setenv("AWS_BUCKET_NAME", "from-env")
        s = Settings(_env_file=None)
        assert s.download_attempts == 7
        assert s.aws_bucket_name == "from-env"


class TestModels:
    def test_storage_ids(self):
        assert is_storage_id(new_storage_id())
        assert not is_storage_id("12345")
        assert not is_storage_id("Keepr_1001")

    @freeze_time("2024-05-01 12:00:00")
    def test_utcnow_iso(self):
        assert utcnow_iso() == "2024-05-01T12:00:00+00:00"

    def test_from_dict_normalizes_timestamps(self):
        created = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
        order = Order.from_dict(
            {
                "order_id": "1",
                "id": "abc",
                "created_at": created,
                "updated_at": None,
                "files": [{"line_item_id": "1", "video_id": "v", "uploaded_url": "u", "unknown": "x"}],
                "unexpected_column": True,
            }
        )
        assert order.created_at == "2024-05-01T12:00:00+00:00"
        assert order.files[0].uploaded_url == "u"
        assert order.tracking_number is None
        assert order.last_status is None

    def test_round_trip(self):
        order = Order(order_id="9")
        assert Order.from_dict(order.to_dict()) == order
