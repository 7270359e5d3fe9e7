# Utilities used by confit to talk to AWS: the instance metadata service, EC2
# for instance tags and S3 for the configuration objects.
import logging
import os
import urllib.error
import urllib.request
from collections import namedtuple

import boto3
import botocore.exceptions
from botocore.config import Config

from confit_errors import (CatalogError, ConfigError, DownloadError,
                           InstanceLookupError, NetworkError)

log = logging.getLogger(__name__)

AWS_REGION = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")

METADATA_HOST = "http://169.254.169.254"
TOKEN_URL = METADATA_HOST + "/latest/api/token"
INSTANCE_ID_URL = METADATA_HOST + "/latest/meta-data/instance-id"
TOKEN_TTL_SECONDS = 60
METADATA_TIMEOUT = 2.0

CONNECT_TIMEOUT = 5
READ_TIMEOUT = 60

StoredObject = namedtuple("StoredObject", ["key", "size"])


def client_config():
    """
    Bounded timeouts, single attempt per call.
    """
    return Config(
        connect_timeout=CONNECT_TIMEOUT,
        read_timeout=READ_TIMEOUT,
        retries={"max_attempts": 1, "mode": "standard"},
    )


def connect_to_region(region=None):
    """
    Returns (ec2, s3) clients sharing one session. With no region the boto3
    default chain decides (environment, config file, instance metadata).
    """
    session = boto3.Session(region_name=region or AWS_REGION)
    try:
        ec2 = session.client("ec2", config=client_config())
        s3 = session.client("s3", config=client_config())
    except botocore.exceptions.NoRegionError as e:
        raise ConfigError("no AWS region configured; pass --region or set "
                          "AWS_REGION") from e
    return ec2, s3


###############################################################################


def _get_metadata_token(timeout):
    req = urllib.request.Request(
        TOKEN_URL,
        method="PUT",
        headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.read().decode("utf-8").strip()
    except urllib.error.HTTPError as e:
        # Endpoint answered but has no IMDSv2; fall back to plain GET
        log.debug("Metadata token request rejected (%s), using IMDSv1", e.code)
        return None
    except (OSError, UnicodeDecodeError) as e:
        # Dropped past the IMDS hop limit; the GET below decides reachability
        log.debug("No metadata token (%s), using IMDSv1", e)
        return None


def get_instance_id(timeout=METADATA_TIMEOUT):
    """
    Ask the link-local metadata service who we are.
    """
    headers = {}
    token = _get_metadata_token(timeout)
    if token:
        headers["X-aws-ec2-metadata-token"] = token
    req = urllib.request.Request(INSTANCE_ID_URL, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read()
    except OSError as e:
        raise NetworkError("could not get instance id from %s: %s"
                           % (INSTANCE_ID_URL, e)) from e

    try:
        instance_id = body.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise NetworkError("metadata service returned a malformed instance id: "
                           "%s" % e) from e
    if not instance_id:
        raise NetworkError("metadata service returned an empty instance id")
    return instance_id


def get_instance(ec2, instance_id):
    """
    Describe exactly one instance by id.
    """
    try:
        resp = ec2.describe_instances(InstanceIds=[instance_id])
    except botocore.exceptions.ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code.startswith("InvalidInstanceID"):
            raise InstanceLookupError("no instance found for %s (%s)"
                                      % (instance_id, code)) from e
        raise NetworkError("describe_instances failed for %s: %s"
                           % (instance_id, e)) from e
    except botocore.exceptions.BotoCoreError as e:
        raise NetworkError("describe_instances failed for %s: %s"
                           % (instance_id, e)) from e

    found = []
    for res in resp.get("Reservations", []):
        for inst in res.get("Instances", []):
            found.append(inst)
    if len(found) != 1:
        raise InstanceLookupError("expected exactly one instance for %s, got %d"
                                  % (instance_id, len(found)))
    return found[0]


###############################################################################


def list_objects(s3, bucket, prefix):
    """
    Single ListObjects call. Only the first page (1000 keys by default) is
    returned; anything beyond it is not synchronized.
    """
    log.debug("Listing s3://%s/%s", bucket, prefix)
    try:
        resp = s3.list_objects(Bucket=bucket, Prefix=prefix)
    except (botocore.exceptions.ClientError,
            botocore.exceptions.BotoCoreError) as e:
        raise CatalogError("could not list s3://%s/%s: %s"
                           % (bucket, prefix, e)) from e

    if resp.get("IsTruncated"):
        log.warning("Listing of s3://%s/%s is truncated; only the first page "
                    "is synchronized", bucket, prefix)
    return [StoredObject(key=obj["Key"], size=int(obj.get("Size", 0)))
            for obj in resp.get("Contents", [])]


def get_object(s3, bucket, key):
    """
    Read a whole object into memory.
    """
    try:
        resp = s3.get_object(Bucket=bucket, Key=key)
        return resp["Body"].read()
    except (botocore.exceptions.ClientError,
            botocore.exceptions.BotoCoreError) as e:
        raise DownloadError("could not download s3://%s/%s: %s"
                            % (bucket, key, e)) from e
