"""Tests for file derivation."""

from __future__ import annotations

import time

import pytest

from vola_room_core.errors import VolaProtocolError
from vola_room_core.file import derive_file, fix_time


def row(expires_in=3600.0, tags=None, assets=None):
    now_ms = time.time() * 1000
    return [
        "fid1",
        "cat picture.png",
        "image",
        1024,
        now_ms + expires_in * 1000,
        now_ms,
        tags if tags is not None else {"nick": "anon", "ip": "1.2.3.4"},
        assets if assets is not None else {"thumb": "t123"},
    ]


class TestFixTime:
    """Tests for clock correction."""

    def test_fix_time(self):
        """Test server milliseconds become corrected local seconds."""
        assert fix_time(10_000, 2.0) == 8.0

    def test_none(self):
        """Test a missing timestamp stays missing."""
        assert fix_time(None, 1.0) is None


class TestDeriveFile:
    """Tests for derive_file()."""

    def test_fields(self):
        """Test all row fields are mapped."""
        file = derive_file(row(), site="example.org")
        assert file.id == "fid1"
        assert file.name == "cat picture.png"
        assert file.type == "image"
        assert file.size == 1024
        assert file.uploader == "anon"
        assert not file.from_account
        assert file.ip == "1.2.3.4"
        assert file.url == "https://example.org/get/fid1/cat%20picture.png"
        assert file.thumb == "https://example.org/asset/t123/fid1"
        assert file.get_asset("video") is None
        assert str(file) == "<File(anon, fid1, cat picture.png)>"

    def test_account_upload(self):
        """Test account uploads are distinguished from anonymous ones."""
        file = derive_file(row(tags={"user": "Alice"}))
        assert file.from_account
        assert file.uploader == "Alice"
        assert file.ban_spec == {"user": "Alice"}
        assert str(file).startswith("<File(+Alice")

    def test_anonymous_ban_spec(self):
        """Test anonymous uploads are banned by ip."""
        assert derive_file(row()).ban_spec == {"ip": "1.2.3.4"}

    def test_not_expired_when_fresh(self):
        """Test a file with future expiry is live."""
        file = derive_file(row(expires_in=60))
        assert not file.expired
        assert 0 < file.valid_for <= 60

    def test_expired(self):
        """Test a file past its expiry reports it."""
        file = derive_file(row(expires_in=-1))
        assert file.expired
        assert file.valid_for < 0

    def test_time_delta_applied(self):
        """Test the session clock correction shifts expiry."""
        data = row(expires_in=60)
        plain = derive_file(data)
        shifted = derive_file(data, time_delta=120.0)
        assert shifted.expires == pytest.approx(plain.expires - 120.0)
        assert shifted.expired

    def test_short_row_padded(self):
        """Test optional trailing fields may be missing."""
        file = derive_file(["fid", "a.txt", "other", 1, 0])
        assert file.uploaded is None
        assert file.tags == {}
        assert file.assets == {}

    @pytest.mark.parametrize("data", [["fid", "a"], {"id": "fid"}])
    def test_malformed(self, data):
        """Test rows that cannot be a file are rejected."""
        with pytest.raises(VolaProtocolError):
            derive_file(data)

    def test_infos_mutable(self):
        """Test extended info can be cached on the file."""
        file = derive_file(row())
        file.infos = {"checksum": "abc"}
        assert file.infos == {"checksum": "abc"}
