import io
import os
import stat
from unittest.mock import patch

import pytest

import object_sync
from cloud_setup import StoredObject
from confit_errors import DownloadError, FilesystemError, SyncError


class TestDestinationPath:
    def test_strips_leading_prefix(self):
        assert object_sync.destination_path("prod/app.conf", "prod/") == "/app.conf"

    def test_nested_key(self):
        assert (object_sync.destination_path("prod/etc/app/a.conf", "prod/")
                == "/etc/app/a.conf")

    def test_custom_root(self):
        assert (object_sync.destination_path("prod/a.conf", "prod/", "/srv/cfg")
                == "/srv/cfg/a.conf")

    def test_only_leading_occurrence_is_stripped(self):
        assert (object_sync.destination_path("prod/prod/a.conf", "prod/")
                == "/prod/a.conf")

    @pytest.mark.parametrize("key", [
        "prod/app.conf",
        "prod/etc/nginx/sites/default",
        "prod/.hidden",
        "prod/a//b.conf",
        "prod/./a.conf",
    ])
    def test_round_trip(self, key):
        prefix = "prod/"
        dest = object_sync.destination_path(key, prefix)
        assert prefix + dest[len(object_sync.ROOT):] == key

    def test_leading_double_separator_stays_under_root(self):
        assert (object_sync.destination_path("prod//a.conf", "prod/", "/srv/cfg")
                == "/srv/cfg//a.conf")

    def test_key_outside_prefix_is_refused(self):
        with pytest.raises(SyncError, match="not under prefix"):
            object_sync.destination_path("production/app.conf", "prod/")

    @pytest.mark.parametrize("key", [
        "prod/",
        "prod/dir/",
        "prod/../etc/passwd",
        "prod/a/../../b",
    ])
    def test_unsafe_keys_are_refused(self, key):
        with pytest.raises(SyncError):
            object_sync.destination_path(key, "prod/")


def test_plan_skips_empty_objects():
    objects = [StoredObject("prod/app.conf", 12), StoredObject("prod/empty", 0),
               StoredObject("prod/dir/", 0)]
    entries = object_sync.plan("prod/", objects, "/srv")
    assert entries == [object_sync.SyncPlanEntry("prod/app.conf", "/srv/app.conf")]


def test_temp_paths_are_unique_and_beside_destination(tmp_path):
    dest = str(tmp_path / "app.conf")
    first = object_sync.temp_path(dest)
    second = object_sync.temp_path(dest)
    assert first != second
    assert os.path.dirname(first) == str(tmp_path)
    assert os.path.basename(first).startswith(".app.conf.")
    assert first.endswith(".confit.tmp")


class TestPublish:
    def test_writes_owner_only_file(self, tmp_path):
        dest = tmp_path / "a" / "b" / "app.conf"
        object_sync.publish(str(dest), b"hello")
        assert dest.read_bytes() == b"hello"
        assert stat.S_IMODE(dest.stat().st_mode) == 0o600

    def test_replaces_existing_file(self, tmp_path):
        dest = tmp_path / "app.conf"
        dest.write_bytes(b"old contents")
        object_sync.publish(str(dest), b"new")
        assert dest.read_bytes() == b"new"
        assert os.listdir(tmp_path) == ["app.conf"]

    def test_missing_directory_without_create(self, tmp_path):
        dest = tmp_path / "missing" / "app.conf"
        with pytest.raises(FilesystemError):
            object_sync.publish(str(dest), b"x", create_directory=False)
        assert not (tmp_path / "missing").exists()

    def test_existing_directory_is_fine(self, tmp_path):
        (tmp_path / "etc").mkdir()
        object_sync.publish(str(tmp_path / "etc" / "a"), b"x")
        object_sync.publish(str(tmp_path / "etc" / "b"), b"y")
        assert sorted(os.listdir(tmp_path / "etc")) == ["a", "b"]

    def test_failed_rename_leaves_old_file_and_no_temp(self, tmp_path):
        dest = tmp_path / "app.conf"
        dest.write_bytes(b"old")
        with patch("object_sync.os.replace", side_effect=OSError("boom")):
            with pytest.raises(FilesystemError, match="boom"):
                object_sync.publish(str(dest), b"new")
        assert dest.read_bytes() == b"old"
        assert os.listdir(tmp_path) == ["app.conf"]


class TestSync:
    def test_scenario(self, s3, tmp_path):
        objects = [StoredObject("prod/app.conf", 12), StoredObject("prod/empty", 0)]
        written = object_sync.sync(s3, "cfg-bucket", "prod/", objects,
                                   root=str(tmp_path))
        assert written == 1
        assert (tmp_path / "app.conf").read_bytes() == b"listen 80\n"
        assert not (tmp_path / "empty").exists()
        s3.get_object.assert_called_once_with(Bucket="cfg-bucket",
                                              Key="prod/app.conf")

    def test_creates_directories(self, s3, tmp_path):
        objects = [StoredObject("prod/etc/app/extra.conf", 14)]
        assert object_sync.sync(s3, "cfg-bucket", "prod/", objects,
                                root=str(tmp_path)) == 1
        assert ((tmp_path / "etc" / "app" / "extra.conf").read_bytes()
                == b"debug = false\n")

    def test_missing_directory_aborts_but_keeps_earlier_files(self, s3, tmp_path):
        objects = [
            StoredObject("prod/app.conf", 10),
            StoredObject("prod/etc/app/extra.conf", 14),
            StoredObject("staging/app.conf", 12),
        ]
        with pytest.raises(FilesystemError):
            object_sync.sync(s3, "cfg-bucket", "prod/", objects,
                             create_directory=False, root=str(tmp_path))
        assert (tmp_path / "app.conf").read_bytes() == b"listen 80\n"
        assert not (tmp_path / "etc").exists()
        assert s3.get_object.call_count == 2

    def test_download_failure_aborts(self, s3, tmp_path):
        s3.get_object.side_effect = DownloadError("no such key")
        objects = [StoredObject("prod/app.conf", 10)]
        with pytest.raises(SyncError):
            object_sync.sync(s3, "cfg-bucket", "prod/", objects,
                             root=str(tmp_path))
        assert os.listdir(tmp_path) == []

    def test_nothing_to_do(self, s3, tmp_path):
        assert object_sync.sync(s3, "cfg-bucket", "prod/", [],
                                root=str(tmp_path)) == 0
        s3.get_object.assert_not_called()

    def test_doubled_separator_in_key_is_written(self, s3, tmp_path):
        s3.get_object.side_effect = lambda Bucket, Key: {
            "Body": io.BytesIO(b"x = 1\n")}
        objects = [StoredObject("prod/a//b.conf", 6),
                   StoredObject("prod/./c.conf", 6)]
        assert object_sync.sync(s3, "cfg-bucket", "prod/", objects,
                                root=str(tmp_path)) == 2
        assert (tmp_path / "a" / "b.conf").read_bytes() == b"x = 1\n"
        assert (tmp_path / "c.conf").read_bytes() == b"x = 1\n"
