import json
import logging
import os
import time
import types

import cloud_setup
import object_sync
from confit_errors import CacheError, FilesystemError

log = logging.getLogger(__name__)

CACHE_FILE_PREFIX = "/tmp/confit-instance-tags-cache"


def tags_from_instance(instance):
    """
    Turn the EC2 Tags list into a read-only name -> value mapping.
    """
    tags = {}
    for t in instance.get("Tags", []):
        tags[t["Key"]] = t["Value"]
    return types.MappingProxyType(tags)


class TagCache(object):
    """
    Where resolved tags are kept between runs. get_if_fresh returns None on a
    miss or when the entry is older than ttl seconds.
    """

    def get_if_fresh(self, instance_id, ttl):
        raise NotImplementedError

    def put(self, instance_id, tags):
        raise NotImplementedError


class FileTagCache(TagCache):
    """
    One JSON file per instance id; the file's mtime says how old it is.
    """

    def __init__(self, prefix=CACHE_FILE_PREFIX):
        self.prefix = prefix

    def path(self, instance_id):
        return "%s.%s" % (self.prefix, instance_id)

    def get_if_fresh(self, instance_id, ttl):
        path = self.path(instance_id)
        try:
            age = time.time() - os.stat(path).st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError("could not stat tag cache %s: %s" % (path, e)) from e
        if age > ttl:
            log.debug("Tag cache %s is stale (%.0fs old)", path, age)
            return None

        try:
            with open(path, "r") as f:
                tags = json.load(f)
        except (OSError, ValueError) as e:
            raise CacheError("could not read tag cache %s: %s" % (path, e)) from e
        if not isinstance(tags, dict):
            raise CacheError("tag cache %s does not hold a mapping" % path)
        return types.MappingProxyType(
            dict((str(k), str(v)) for k, v in tags.items()))

    def put(self, instance_id, tags):
        path = self.path(instance_id)
        data = json.dumps(dict(tags)).encode("utf-8")
        try:
            object_sync.publish(path, data, create_directory=False)
        except FilesystemError as e:
            raise CacheError("could not write tag cache %s: %s" % (path, e)) from e


class MemoryTagCache(TagCache):
    def __init__(self, clock=time.time):
        self.clock = clock
        self.entries = {}

    def get_if_fresh(self, instance_id, ttl):
        entry = self.entries.get(instance_id)
        if entry is None:
            return None
        stored_at, tags = entry
        if self.clock() - stored_at > ttl:
            return None
        return tags

    def put(self, instance_id, tags):
        self.entries[instance_id] = (self.clock(),
                                     types.MappingProxyType(dict(tags)))


class TagResolver(object):
    """
    Looks up an instance's tags, going through the cache when cache_ttl
    (seconds) is positive. A ttl of zero or less disables the cache.
    """

    def __init__(self, ec2, cache_ttl=0, cache=None):
        self.ec2 = ec2
        self.cache_ttl = cache_ttl
        self.cache = cache if cache is not None else FileTagCache()

    @property
    def caching(self):
        return self.cache_ttl > 0

    def resolve(self, instance_id):
        if self.caching:
            tags = self.cache.get_if_fresh(instance_id, self.cache_ttl)
            if tags is not None:
                log.info("Using cache")
                return tags

        tags = self.resolve_without_cache(instance_id)

        if self.caching:
            self.cache.put(instance_id, tags)
        return tags

    def resolve_without_cache(self, instance_id):
        instance = cloud_setup.get_instance(self.ec2, instance_id)
        tags = tags_from_instance(instance)
        log.debug("Instance %s has %d tags", instance_id, len(tags))
        return tags
