# Boot-time configuration sync: look up this instance's EC2 tags, render them
# into an S3 key prefix and copy every object under that prefix onto the local
# filesystem.
#
#   confit --bucket my-config --prefix '{{.Environment}}/{{.Role}}'
import argparse
import logging
import re
import sys
from dataclasses import dataclass
from typing import Optional

import cloud_setup
import key_prefix
import object_sync
from confit_errors import ConfigError, ConfitError
from instance_tags import TagResolver

__version__ = "0.1.5"

log = logging.getLogger("confit")

QUIET_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


@dataclass(frozen=True)
class Config:
    bucket: str
    prefix_template: str
    create_directory: bool = True
    instance_id: str = ""
    cache_ttl: float = 0.0
    debug: bool = False
    region: Optional[str] = None
    destination_root: str = object_sync.ROOT
    metadata_timeout: float = cloud_setup.METADATA_TIMEOUT
    dry_run: bool = False


###############################################################################

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,  # micro sign
    "μs": 1e-6,  # greek mu
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text):
    """
    Parse a Go-style duration ("0s", "300ms", "1h30m", "-2m") into seconds.
    """
    s = text.strip()
    sign = 1.0
    if s[:1] in ("+", "-"):
        if s[0] == "-":
            sign = -1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ConfigError("invalid duration %r" % text)

    total = 0.0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if not m:
            raise ConfigError("invalid duration %r" % text)
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    return sign * total


def parse_bool(text):
    value = text.strip().lower()
    if value in ("1", "t", "true", "yes"):
        return True
    if value in ("0", "f", "false", "no"):
        return False
    raise argparse.ArgumentTypeError("invalid boolean value %r" % text)


def _duration_arg(text):
    try:
        return parse_duration(text)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser():
    # Single-dash spellings keep existing "-bucket foo" invocations working
    p = argparse.ArgumentParser(
        prog="confit",
        description="Sync instance-specific configuration files from S3.",
        allow_abbrev=False,
    )
    p.add_argument("--bucket", "-bucket", required=True,
                   help="bucket name")
    p.add_argument("--prefix", "-prefix", dest="prefix_template",
                   required=True,
                   help="key prefix template, e.g. '{{.Environment}}/{{.Role}}'")
    p.add_argument("--create-directory", "-create-directory",
                   dest="create_directory", type=parse_bool, nargs="?",
                   const=True, default=True, metavar="BOOL",
                   help="create destination directories automatically "
                        "(default: true)")
    p.add_argument("--no-create-directory", dest="create_directory",
                   action="store_false",
                   help="fail if a destination directory is missing")
    p.add_argument("--debug-instance-id", "-debug-instance-id",
                   dest="instance_id", default="",
                   help="instance id to use instead of asking the metadata "
                        "service (for debugging)")
    p.add_argument("--cache-ttl", "-cache-ttl", type=_duration_arg,
                   default=0.0, metavar="DURATION",
                   help="TTL for the instance tags cache, e.g. 10m "
                        "(default: 0s, disabled)")
    p.add_argument("--debug", "-debug", type=parse_bool, nargs="?",
                   const=True, default=False, metavar="BOOL",
                   help="debug logging")
    p.add_argument("--region", "-region", default=None,
                   help="AWS region (default: AWS_REGION or the boto3 "
                        "default chain)")
    p.add_argument("--destination-root", default=object_sync.ROOT,
                   help="local directory object paths are placed under "
                        "(default: /)")
    p.add_argument("--metadata-timeout", type=_duration_arg,
                   default=cloud_setup.METADATA_TIMEOUT, metavar="DURATION",
                   help="timeout for the instance metadata request "
                        "(default: 2s)")
    p.add_argument("--dry-run", action="store_true",
                   help="log what would be written without downloading")
    p.add_argument("--version", action="version",
                   version="%(prog)s " + __version__)
    return p


def parse_args(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.bucket:
        parser.error("--bucket must not be empty")
    if args.metadata_timeout <= 0:
        parser.error("--metadata-timeout must be positive")
    return Config(
        bucket=args.bucket,
        prefix_template=args.prefix_template,
        create_directory=args.create_directory,
        instance_id=args.instance_id,
        cache_ttl=args.cache_ttl,
        debug=args.debug,
        region=args.region,
        destination_root=args.destination_root,
        metadata_timeout=args.metadata_timeout,
        dry_run=args.dry_run,
    )


def setup_logging(debug=False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not debug:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


###############################################################################


def run(config, connect=None, cache=None):
    """
    One full pass. Returns the number of files written; any failure raises a
    ConfitError and nothing after it is attempted.
    """
    log.info("Starting Confit v%s", __version__)
    log.debug("Bucket: %s", config.bucket)
    log.debug("Prefix format: %s", config.prefix_template)
    log.debug("Create destination directory automatically?: %s",
              config.create_directory)

    connect = connect or cloud_setup.connect_to_region
    ec2, s3 = connect(config.region)

    instance_id = config.instance_id
    if not instance_id:
        log.debug("Getting instance id...")
        instance_id = cloud_setup.get_instance_id(config.metadata_timeout)
    log.debug("Instance ID is %s", instance_id)

    resolver = TagResolver(ec2, cache_ttl=config.cache_ttl, cache=cache)
    tags = resolver.resolve(instance_id)

    prefix = key_prefix.render(config.prefix_template, tags)
    log.debug("Prefix: %s", prefix)

    objects = cloud_setup.list_objects(s3, config.bucket, prefix)
    log.info("%d objects found", len(objects))

    if config.dry_run:
        for entry in object_sync.plan(prefix, objects, config.destination_root):
            log.info("Would write %s -> %s", entry.key, entry.destination)
        return 0

    written = object_sync.sync(s3, config.bucket, prefix, objects,
                               create_directory=config.create_directory,
                               root=config.destination_root)
    log.info("%d files written", written)
    return written


def main(argv=None):
    config = parse_args(argv)
    setup_logging(config.debug)
    try:
        run(config)
    except ConfitError as e:
        log.error("%s: %s", type(e).__name__, e, exc_info=config.debug)
        return 1
    log.info("Finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
