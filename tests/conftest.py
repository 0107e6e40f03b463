from datetime import datetime, timedelta, timezone

import boto3
import pytest
from botocore.stub import Stubber

from awsfuncs.cloudformation import StackEvent

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class StubbedSession:
    """
    Stands in for a boto3 Session. Every service is backed by one real
    client whose responses come from a botocore Stubber.
    """

    def __init__(self):
        self.session = boto3.Session(
            region_name="eu-west-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        self.resources = dict()
        self.stubbers = dict()

    def stub(self, service):
        if service not in self.stubbers:
            resource = self.session.resource(service) if service == "ec2" else None
            client = resource.meta.client if resource else self.session.client(service)
            self.resources[service] = resource
            self.stubbers[service] = Stubber(client)
            self.stubbers[service].activate()
        return self.stubbers[service]

    def client(self, service, region_name=None):
        return self.stub(service).client

    def resource(self, service, region_name=None):
        self.stub(service)
        return self.resources[service]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "AWSFUNCS_REGION",
        "AWSFUNCS_PROFILE",
        "AWSFUNCS_SSH_USER",
        "AWSFUNCS_INSTANCE_FILTERS",
        "AWSFUNCS_POLL_INTERVAL",
        "AWSFUNCS_TAIL_TIMEOUT",
        "AWSFUNCS_NOT_FOUND_GRACE",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def b3_session():
    session = StubbedSession()
    yield session
    for stubber in session.stubbers.values():
        stubber.assert_no_pending_responses()


def api_event(logical_id, status, seconds=0, resource_type="AWS::EC2::Instance", stack="web"):
    """A DescribeStackEvents entry, as the API returns it"""
    return {
        "StackId": f"arn:aws:cloudformation:eu-west-1:123456789012:stack/{stack}/abc",
        "EventId": f"{logical_id}-{status}-{seconds}",
        "StackName": stack,
        "LogicalResourceId": logical_id,
        "ResourceType": resource_type,
        "ResourceStatus": status,
        "Timestamp": T0 + timedelta(seconds=seconds),
    }


def event(logical_id, status, seconds=0, resource_type="AWS::CloudFormation::Stack"):
    return StackEvent(logical_id, resource_type, status, T0 + timedelta(seconds=seconds))
