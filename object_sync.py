"""
Publishes the listed S3 objects onto the local filesystem.

Each object key has the rendered prefix stripped and is placed under the local
root. Content is written to a temporary file next to the destination and then
renamed over it, so a reader of the destination sees either the old file or the
new one, never a partial write. The first failure aborts the run; files already
published stay in place.
"""
import logging
import os
import secrets
import time
from collections import namedtuple

import cloud_setup
from confit_errors import FilesystemError, SyncError

log = logging.getLogger(__name__)

ROOT = "/"
TEMP_SUFFIX = ".confit.tmp"
DIR_MODE = 0o755
FILE_MODE = 0o600

SyncPlanEntry = namedtuple("SyncPlanEntry", ["key", "destination"])


def destination_path(key, prefix, root=ROOT):
    """
    Map an object key to its local path by swapping the leading prefix for
    root. Only a leading match counts; a key outside the prefix is refused
    rather than written to some unexpected place.
    """
    if not key.startswith(prefix):
        raise SyncError("object key %r is not under prefix %r" % (key, prefix))
    relative = key[len(prefix):]
    if not relative or relative.endswith("/"):
        raise SyncError("object key %r does not name a file" % key)
    if ".." in relative.split("/"):
        raise SyncError("object key %r escapes the destination root" % key)
    if not root.endswith("/"):
        root += "/"
    return root + relative


def temp_path(destination):
    """
    .<name>.<token>.confit.tmp beside the destination, so the final rename
    stays on one filesystem and no two objects share a temp file.
    """
    directory, name = os.path.split(destination)
    token = "%d%s" % (time.time_ns(), secrets.token_hex(4))
    return os.path.join(directory, ".%s.%s%s" % (name, token, TEMP_SUFFIX))


def iter_plan(prefix, objects, root=ROOT):
    for obj in objects:
        if obj.size == 0:
            continue
        yield SyncPlanEntry(obj.key, destination_path(obj.key, prefix, root))


def plan(prefix, objects, root=ROOT):
    """
    Work out where every non-empty object goes without touching anything.
    """
    return list(iter_plan(prefix, objects, root))


def make_directories(path):
    try:
        os.makedirs(path, mode=DIR_MODE, exist_ok=True)
    except OSError as e:
        raise FilesystemError("could not create directory %s: %s"
                              % (path, e)) from e


def _remove_quietly(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Could not remove temporary file %s: %s", path, e)


def publish(destination, data, create_directory=True):
    """
    Write data to destination atomically.
    """
    if create_directory:
        log.debug("Creating destination directory...")
        make_directories(os.path.dirname(destination))

    tmp = temp_path(destination)
    log.debug("Writing to %s", tmp)
    try:
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
    except OSError as e:
        raise FilesystemError("could not create %s: %s" % (tmp, e)) from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        log.debug("Moving %s to %s", tmp, destination)
        os.replace(tmp, destination)
    except OSError as e:
        _remove_quietly(tmp)
        raise FilesystemError("could not publish %s: %s"
                              % (destination, e)) from e


def sync(s3, bucket, prefix, objects, create_directory=True, root=ROOT):
    """
    Download and publish every non-empty object, in listing order. Returns
    the number of files written.
    """
    written = 0
    for entry in iter_plan(prefix, objects, root):
        log.debug("%s -> %s", entry.key, entry.destination)
        data = cloud_setup.get_object(s3, bucket, entry.key)
        publish(entry.destination, data, create_directory)
        written += 1
    return written
