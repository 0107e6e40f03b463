import json
from datetime import timedelta

import pytest

from awsfuncs import cloudformation
from awsfuncs.cloudformation import StackEvent
from awsfuncs.config import Config
from awsfuncs.exceptions import StackError, StackEventsError, StackNotFoundError
from tests.conftest import T0, api_event

STACK_ID = "arn:aws:cloudformation:eu-west-1:123456789012:stack/web/abc"


def not_found(stubber, method):
    stubber.add_client_error(
        method,
        service_error_code="ValidationError",
        service_message="Stack with id web does not exist",
        http_status_code=400,
    )


def stack_description(status="CREATE_COMPLETE", **extra):
    stack = {"StackName": "web", "StackId": STACK_ID, "CreationTime": T0, "StackStatus": status}
    stack.update(extra)
    return {"Stacks": [stack]}


class TestListEvents:
    def test_oldest_first(self, b3_session):
        stubber = b3_session.stub("cloudformation")
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    api_event("web", "CREATE_COMPLETE", 20, "AWS::CloudFormation::Stack"),
                    api_event("Bucket", "CREATE_COMPLETE", 10, "AWS::S3::Bucket"),
                    api_event("web", "CREATE_IN_PROGRESS", 0, "AWS::CloudFormation::Stack"),
                ]
            },
            {"StackName": "web"},
        )

        events = cloudformation.list_events("web", b3_session=b3_session)

        assert [str(e) for e in events] == [
            "web\tAWS::CloudFormation::Stack\tCREATE_IN_PROGRESS",
            "Bucket\tAWS::S3::Bucket\tCREATE_COMPLETE",
            "web\tAWS::CloudFormation::Stack\tCREATE_COMPLETE",
        ]
        assert events[0].timestamp == T0

    def test_all_pages(self, b3_session):
        stubber = b3_session.stub("cloudformation")
        stubber.add_response(
            "describe_stack_events",
            {"StackEvents": [api_event("Queue", "CREATE_COMPLETE", 2)], "NextToken": "page2"},
            {"StackName": "web"},
        )
        stubber.add_response(
            "describe_stack_events",
            {"StackEvents": [api_event("web", "CREATE_IN_PROGRESS", 1)]},
            {"StackName": "web", "NextToken": "page2"},
        )

        events = cloudformation.list_events("web", b3_session=b3_session)

        assert [e.logical_id for e in events] == ["web", "Queue"]

    def test_same_timestamp_keeps_api_order(self, b3_session):
        stubber = b3_session.stub("cloudformation")
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    api_event("Second", "CREATE_IN_PROGRESS", 5),
                    api_event("First", "CREATE_IN_PROGRESS", 5),
                ]
            },
            {"StackName": "web"},
        )

        events = cloudformation.list_events("web", b3_session=b3_session)

        assert [e.logical_id for e in events] == ["First", "Second"]

    def test_no_events_yet(self, b3_session):
        b3_session.stub("cloudformation").add_response(
            "describe_stack_events", {"StackEvents": []}, {"StackName": "web"}
        )

        assert cloudformation.list_events("web", b3_session=b3_session) == []

    def test_missing_stack(self, b3_session):
        not_found(b3_session.stub("cloudformation"), "describe_stack_events")

        with pytest.raises(StackNotFoundError) as e:
            cloudformation.list_events("web", b3_session=b3_session)
        assert e.value.stack_name == "web"

    def test_other_errors(self, b3_session):
        b3_session.stub("cloudformation").add_client_error(
            "describe_stack_events",
            service_error_code="AccessDenied",
            service_message="not allowed",
            http_status_code=403,
        )

        with pytest.raises(StackEventsError):
            cloudformation.list_events("web", b3_session=b3_session)


def test_stack_event_identity_ignores_reason():
    a = StackEvent("Bucket", "AWS::S3::Bucket", "CREATE_FAILED", T0, reason="quota")
    b = StackEvent("Bucket", "AWS::S3::Bucket", "CREATE_FAILED", T0)
    c = StackEvent("Bucket", "AWS::S3::Bucket", "CREATE_FAILED", T0 + timedelta(seconds=1))

    assert a == b
    assert len({a, b, c}) == 2


def test_describe_status(b3_session):
    b3_session.stub("cloudformation").add_response(
        "describe_stacks", stack_description("UPDATE_ROLLBACK_COMPLETE"), {"StackName": "web"}
    )

    assert cloudformation.describe_status("web", b3_session=b3_session) == "UPDATE_ROLLBACK_COMPLETE"


def test_describe_status_missing_stack(b3_session):
    not_found(b3_session.stub("cloudformation"), "describe_stacks")

    with pytest.raises(StackNotFoundError):
        cloudformation.describe_status("web", b3_session=b3_session)


def test_list_stacks_skips_deleted(b3_session):
    b3_session.stub("cloudformation").add_response(
        "list_stacks",
        {
            "StackSummaries": [
                {"StackName": "web", "CreationTime": T0, "StackStatus": "CREATE_COMPLETE"},
                {"StackName": "old", "CreationTime": T0, "StackStatus": "DELETE_COMPLETE"},
                {"StackName": "db", "CreationTime": T0, "StackStatus": "UPDATE_IN_PROGRESS"},
            ]
        },
        {},
    )

    assert cloudformation.list_stacks(b3_session=b3_session) == [
        ("db", "UPDATE_IN_PROGRESS"),
        ("web", "CREATE_COMPLETE"),
    ]


@pytest.mark.parametrize(
    "pairs,expected",
    [
        (["Env=prod"], [{"ParameterKey": "Env", "ParameterValue": "prod"}]),
        (["Url=http://x/?a=b"], [{"ParameterKey": "Url", "ParameterValue": "http://x/?a=b"}]),
        (["Env"], [{"ParameterKey": "Env", "UsePreviousValue": True}]),
        (["Env="], [{"ParameterKey": "Env", "UsePreviousValue": True}]),
        (None, []),
    ],
)
def test_parse_parameters(pairs, expected):
    assert cloudformation.parse_parameters(pairs) == expected


def test_parse_parameters_rejects_missing_key():
    with pytest.raises(ValueError):
        cloudformation.parse_parameters(["=prod"])


def test_create_stack(b3_session):
    b3_session.stub("cloudformation").add_response(
        "create_stack",
        {"StackId": STACK_ID},
        {
            "StackName": "web",
            "TemplateBody": "{}",
            "Parameters": [{"ParameterKey": "Env", "ParameterValue": "prod"}],
            "Capabilities": ["CAPABILITY_IAM"],
            "Tags": [{"Key": "team", "Value": "ops"}],
        },
    )

    stack_id = cloudformation.create_stack(
        "web",
        "{}",
        parameters=[{"ParameterKey": "Env", "ParameterValue": "prod"}],
        capabilities=("CAPABILITY_IAM",),
        tags={"team": "ops"},
        b3_session=b3_session,
    )

    assert stack_id == STACK_ID


def test_create_stack_error(b3_session):
    b3_session.stub("cloudformation").add_client_error(
        "create_stack",
        service_error_code="AlreadyExistsException",
        service_message="Stack [web] already exists",
    )

    with pytest.raises(StackError) as e:
        cloudformation.create_stack("web", "{}", b3_session=b3_session)
    assert not isinstance(e.value, StackNotFoundError)


def test_update_stack(b3_session):
    b3_session.stub("cloudformation").add_response(
        "update_stack", {"StackId": STACK_ID}, {"StackName": "web", "TemplateBody": "{}"}
    )

    assert cloudformation.update_stack("web", "{}", b3_session=b3_session) == STACK_ID


def test_update_stack_without_changes(b3_session):
    b3_session.stub("cloudformation").add_client_error(
        "update_stack",
        service_error_code="ValidationError",
        service_message="No updates are to be performed.",
    )

    assert cloudformation.update_stack("web", "{}", b3_session=b3_session) is None


def test_delete_stack_returns_stack_id(b3_session):
    stubber = b3_session.stub("cloudformation")
    stubber.add_response("describe_stacks", stack_description(), {"StackName": "web"})
    stubber.add_response("delete_stack", {}, {"StackName": STACK_ID})

    assert cloudformation.delete_stack("web", b3_session=b3_session) == STACK_ID


def test_delete_missing_stack(b3_session):
    not_found(b3_session.stub("cloudformation"), "describe_stacks")

    with pytest.raises(StackNotFoundError):
        cloudformation.delete_stack("web", b3_session=b3_session)


def test_stack_outputs(b3_session):
    b3_session.stub("cloudformation").add_response(
        "describe_stacks",
        stack_description(
            Outputs=[
                {"OutputKey": "Url", "OutputValue": "https://example.com"},
                {"OutputKey": "BucketName", "OutputValue": "web-assets"},
            ]
        ),
        {"StackName": "web"},
    )

    assert cloudformation.stack_outputs("web", b3_session=b3_session) == {
        "Url": "https://example.com",
        "BucketName": "web-assets",
    }


def test_stack_outputs_none_defined(b3_session):
    b3_session.stub("cloudformation").add_response(
        "describe_stacks", stack_description(), {"StackName": "web"}
    )

    assert cloudformation.stack_outputs("web", b3_session=b3_session) == {}


def test_stack_resources(b3_session):
    b3_session.stub("cloudformation").add_response(
        "list_stack_resources",
        {
            "StackResourceSummaries": [
                {
                    "LogicalResourceId": "Bucket",
                    "PhysicalResourceId": "web-assets",
                    "ResourceType": "AWS::S3::Bucket",
                    "LastUpdatedTimestamp": T0,
                    "ResourceStatus": "CREATE_COMPLETE",
                },
                {
                    "LogicalResourceId": "Queue",
                    "ResourceType": "AWS::SQS::Queue",
                    "LastUpdatedTimestamp": T0,
                    "ResourceStatus": "CREATE_FAILED",
                },
            ]
        },
        {"StackName": "web"},
    )

    assert cloudformation.stack_resources("web", b3_session=b3_session) == [
        ("Bucket", "AWS::S3::Bucket", "CREATE_COMPLETE", "web-assets"),
        ("Queue", "AWS::SQS::Queue", "CREATE_FAILED", ""),
    ]


class TestTemplateDiff:
    deployed = {"Resources": {"Bucket": {"Type": "AWS::S3::Bucket"}}}

    def stub_template(self, b3_session, body):
        b3_session.stub("cloudformation").add_response(
            "get_template", {"TemplateBody": body}, {"StackName": "web"}
        )

    def test_same_json_formatted_differently(self, b3_session):
        self.stub_template(b3_session, json.dumps(self.deployed))
        local = json.dumps(self.deployed, indent=4)

        assert cloudformation.template_diff("web", local, b3_session=b3_session) == []

    def test_changed_json(self, b3_session):
        self.stub_template(b3_session, json.dumps(self.deployed))
        local = json.dumps({"Resources": {"Bucket": {"Type": "AWS::SQS::Queue"}}})

        diff = cloudformation.template_diff("web", local, b3_session=b3_session)

        assert diff[0] == "--- web (deployed)"
        assert diff[1] == "+++ web (local)"
        assert '-      "Type": "AWS::S3::Bucket"' in diff
        assert '+      "Type": "AWS::SQS::Queue"' in diff

    def test_yaml_compared_line_by_line(self, b3_session):
        self.stub_template(b3_session, "Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n")
        local = "Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n    DeletionPolicy: Retain\n"

        diff = cloudformation.template_diff("web", local, b3_session=b3_session)

        assert "+    DeletionPolicy: Retain" in diff
        assert not [line for line in diff if line.startswith("-") and not line.startswith("---")]


def test_client_uses_config_region():
    config = Config(region="ap-south-1")

    assert cloudformation._client(None, config).meta.region_name == "ap-south-1"


def test_session_client_uses_config_region(b3_session, monkeypatch):
    regions = []
    client = b3_session.client

    def recording_client(service, region_name=None):
        regions.append(region_name)
        return client(service, region_name=region_name)

    monkeypatch.setattr(b3_session, "client", recording_client)
    b3_session.stub("cloudformation").add_response(
        "describe_stacks", stack_description(), {"StackName": "web"}
    )

    cloudformation.describe_status("web", config=Config(region="eu-west-1"), b3_session=b3_session)

    assert regions == ["eu-west-1"]


@pytest.mark.parametrize(
    "stack,name",
    [
        (STACK_ID, "web"),
        ("arn:aws-cn:cloudformation:cn-north-1:123456789012:stack/my-stack/1a2b", "my-stack"),
        ("web", "web"),
        ("arn:aws:s3:::bucket/stack/x", "arn:aws:s3:::bucket/stack/x"),
    ],
)
def test_stack_name_from_id(stack, name):
    assert cloudformation.stack_name_from_id(stack) == name
