from unittest.mock import MagicMock

import pytest


def make_instance_response(*tag_maps):
    """describe_instances response with one reservation per tag map."""
    reservations = []
    for i, tags in enumerate(tag_maps):
        reservations.append({
            "Instances": [{
                "InstanceId": "i-%08d" % i,
                "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
            }]
        })
    return {"Reservations": reservations}


class FakeBucket(object):
    """In-memory stand-in for the S3 calls confit makes."""

    def __init__(self, objects):
        self.objects = dict(objects)

    def list_objects(self, Bucket, Prefix):
        contents = [{"Key": k, "Size": len(v)}
                    for k, v in self.objects.items() if k.startswith(Prefix)]
        return {"Contents": contents, "IsTruncated": False}

    def get_object(self, Bucket, Key):
        body = MagicMock()
        body.read.return_value = self.objects[Key]
        return {"Body": body}


@pytest.fixture
def ec2():
    client = MagicMock()
    client.describe_instances.return_value = make_instance_response(
        {"Env": "prod", "Role": "web"})
    return client


@pytest.fixture
def s3():
    client = MagicMock()
    bucket = FakeBucket({
        "prod/app.conf": b"listen 80\n",
        "prod/empty": b"",
        "prod/etc/app/extra.conf": b"debug = false\n",
        "staging/app.conf": b"listen 8080\n",
    })
    client.list_objects.side_effect = bucket.list_objects
    client.get_object.side_effect = bucket.get_object
    return client
