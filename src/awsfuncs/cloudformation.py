import difflib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from awsfuncs.exceptions import StackError, StackEventsError, StackNotFoundError

LOG = logging.getLogger(__name__)

TERMINAL_SUFFIXES = ("_COMPLETE", "_FAILED")
NO_UPDATES_MESSAGE = "No updates are to be performed"


@dataclass(frozen=True)
class StackEvent:
    """
    One entry of a stack's event log, as returned by DescribeStackEvents.

    Two events are the same event when resource, type, status and timestamp
    all match; the status reason is carried along for display only.
    """

    logical_id: str
    resource_type: str
    status: str
    timestamp: Optional[datetime] = None
    reason: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_api(cls, event):
        return cls(
            logical_id=event["LogicalResourceId"],
            resource_type=event.get("ResourceType", ""),
            status=event["ResourceStatus"],
            timestamp=event.get("Timestamp"),
            reason=event.get("ResourceStatusReason"),
        )

    def is_terminal_for(self, stack_name):
        """True if this event closes a request made on the stack itself"""
        return self.logical_id == stack_name and self.status.endswith(TERMINAL_SUFFIXES)

    def __str__(self):
        return f"{self.logical_id}\t{self.resource_type}\t{self.status}"


def _client(b3_session, config=None):
    region = config.region if config else None
    if b3_session:
        return b3_session.client("cloudformation", region_name=region)
    return boto3.client("cloudformation", region_name=region)


def stack_name_from_id(stack):
    """
    Return the stack name inside a stack ID such as
    'arn:aws:cloudformation:eu-west-1:123456789012:stack/web/0f3c...'.
    Anything that is not a stack ID is returned unchanged.
    """
    _, sep, rest = stack.partition(":stack/")
    if stack.startswith("arn:") and sep:
        return rest.split("/", 1)[0]
    return stack


def _is_not_found(error):
    err = error.response.get("Error", {})
    return err.get("Code") == "ValidationError" and "does not exist" in err.get("Message", "")


def _raise_for(stack, error):
    """Translate a botocore error about a stack into an awsfuncs exception"""
    if isinstance(error, ClientError) and _is_not_found(error):
        raise StackNotFoundError(stack) from error
    raise StackError(stack, f"Stack {stack}: {error}") from error


def list_events(stack, config=None, b3_session=None):
    """
    Fetch the complete event log of a stack, oldest event first.

    Args:
        stack: stack name or stack ID. Deleted stacks can only be looked up
            by their ID.
        config: Config object, optional. Its region is used for the client.
        b3_session: Boto3 Session object. If passed to the function, boto3
            clients will be based off it, otherwise the default session will
            be used.

    Returns:
        list of StackEvent, ascending by timestamp. Empty if the stack has
        not logged anything yet.

    Raises:
        StackNotFoundError: the stack does not exist
        StackEventsError: any other failure talking to CloudFormation
    """
    cfn = _client(b3_session, config)
    events = list()
    try:
        for page in cfn.get_paginator("describe_stack_events").paginate(StackName=stack):
            events.extend(StackEvent.from_api(e) for e in page["StackEvents"])
    except ClientError as e:
        if _is_not_found(e):
            raise StackNotFoundError(stack) from e
        raise StackEventsError(stack, f"Stack {stack}: {e}") from e
    except BotoCoreError as e:
        raise StackEventsError(stack, f"Stack {stack}: {e}") from e
    # The API returns newest first; keep that relative order for ties.
    events.reverse()
    return sorted(events, key=lambda e: e.timestamp or datetime.min)


def _describe_stack(stack, b3_session, config=None):
    cfn = _client(b3_session, config)
    try:
        return cfn.describe_stacks(StackName=stack)["Stacks"][0]
    except (ClientError, BotoCoreError) as e:
        _raise_for(stack, e)


def describe_status(stack, config=None, b3_session=None):
    """Return the current status of a stack, e.g. 'UPDATE_COMPLETE'"""
    return _describe_stack(stack, b3_session, config)["StackStatus"]


def list_stacks(config=None, b3_session=None):
    """
    List all stacks that were not deleted.

    Returns:
        list of (stack name, stack status) tuples sorted by name
    """
    cfn = _client(b3_session, config)
    stacks = list()
    try:
        for page in cfn.get_paginator("list_stacks").paginate():
            for summary in page["StackSummaries"]:
                if summary["StackStatus"] != "DELETE_COMPLETE":
                    stacks.append((summary["StackName"], summary["StackStatus"]))
    except (ClientError, BotoCoreError) as e:
        raise StackError(None, f"Listing stacks failed: {e}") from e
    return sorted(stacks)


def parse_parameters(pairs):
    """
    Turn "Key=Value" strings into CloudFormation parameters.

    A pair without a value ("Key" or "Key=") keeps the previous value of the
    parameter, which is only meaningful for updates.
    """
    parameters = list()
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not key:
            raise ValueError(f"Invalid parameter {pair!r}, expected Key=Value")
        if sep and value:
            parameters.append({"ParameterKey": key, "ParameterValue": value})
        else:
            parameters.append({"ParameterKey": key, "UsePreviousValue": True})
    return parameters


def _stack_request(name, template_body, parameters, capabilities, tags):
    request = {"StackName": name, "TemplateBody": template_body}
    if parameters:
        request["Parameters"] = parameters
    if capabilities:
        request["Capabilities"] = list(capabilities)
    if tags:
        request["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
    return request


def create_stack(
    name,
    template_body,
    parameters=None,
    capabilities=None,
    tags=None,
    config=None,
    b3_session=None,
):
    """
    Create a stack.

    Args:
        name: name of the new stack
        template_body: template text, JSON or YAML
        parameters: list of CloudFormation parameters, see parse_parameters()
        capabilities: e.g. ['CAPABILITY_IAM'], required by templates that
            create IAM resources
        tags: dictionary of tags applied to the stack and its resources
        config: Config object, optional
        b3_session: Boto3 Session object, optional

    Returns:
        ID of the stack being created
    """
    cfn = _client(b3_session, config)
    request = _stack_request(name, template_body, parameters, capabilities, tags)
    try:
        stack_id = cfn.create_stack(**request)["StackId"]
    except (ClientError, BotoCoreError) as e:
        _raise_for(name, e)
    LOG.info("Creating stack %s (%s)", name, stack_id)
    return stack_id


def update_stack(
    name,
    template_body,
    parameters=None,
    capabilities=None,
    tags=None,
    config=None,
    b3_session=None,
):
    """
    Update a stack. Takes the same arguments as create_stack().

    Returns:
        ID of the stack being updated, or None if the template and parameters
        are identical to the deployed ones and there is nothing to do
    """
    cfn = _client(b3_session, config)
    request = _stack_request(name, template_body, parameters, capabilities, tags)
    try:
        stack_id = cfn.update_stack(**request)["StackId"]
    except ClientError as e:
        if NO_UPDATES_MESSAGE in e.response.get("Error", {}).get("Message", ""):
            LOG.info("Stack %s is up to date", name)
            return None
        _raise_for(name, e)
    except BotoCoreError as e:
        _raise_for(name, e)
    LOG.info("Updating stack %s (%s)", name, stack_id)
    return stack_id


def delete_stack(name, config=None, b3_session=None):
    """
    Delete a stack.

    Returns:
        ID of the stack. Once deletion finishes the stack can no longer be
        found by name, so its events have to be read using this ID.
    """
    stack_id = _describe_stack(name, b3_session, config)["StackId"]
    cfn = _client(b3_session, config)
    try:
        cfn.delete_stack(StackName=stack_id)
    except (ClientError, BotoCoreError) as e:
        _raise_for(name, e)
    LOG.info("Deleting stack %s (%s)", name, stack_id)
    return stack_id


def stack_outputs(name, config=None, b3_session=None):
    """Return the outputs of a stack as a dictionary {OutputKey: OutputValue}"""
    stack = _describe_stack(name, b3_session, config)
    return {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}


def stack_resources(name, config=None, b3_session=None):
    """
    List the resources of a stack.

    Returns:
        list of (logical id, resource type, status, physical id) tuples in
        the order CloudFormation returns them
    """
    cfn = _client(b3_session, config)
    resources = list()
    try:
        for page in cfn.get_paginator("list_stack_resources").paginate(StackName=name):
            for r in page["StackResourceSummaries"]:
                resources.append(
                    (
                        r["LogicalResourceId"],
                        r["ResourceType"],
                        r["ResourceStatus"],
                        r.get("PhysicalResourceId", ""),
                    )
                )
    except (ClientError, BotoCoreError) as e:
        _raise_for(name, e)
    return resources


def _normalize_template(template):
    # boto3 hands back JSON templates already parsed
    if isinstance(template, str):
        try:
            template = json.loads(template)
        except ValueError:
            return template.splitlines()
    return json.dumps(template, indent=2, sort_keys=True).splitlines()


def template_diff(name, template_body, config=None, b3_session=None):
    """
    Compare the template deployed for a stack with a local one.

    JSON templates are compared after normalizing indentation and key order,
    anything else line by line.

    Returns:
        list of unified diff lines, empty if the templates are the same
    """
    cfn = _client(b3_session, config)
    try:
        deployed = cfn.get_template(StackName=name)["TemplateBody"]
    except (ClientError, BotoCoreError) as e:
        _raise_for(name, e)
    return list(
        difflib.unified_diff(
            _normalize_template(deployed),
            _normalize_template(template_body),
            fromfile=f"{name} (deployed)",
            tofile=f"{name} (local)",
            lineterm="",
        )
    )
