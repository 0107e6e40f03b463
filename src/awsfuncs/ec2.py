import logging
from contextlib import contextmanager

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from awsfuncs.config import Config
from awsfuncs.exceptions import AmbiguousInstanceError, InstanceError, InstanceNotFoundError

LOG = logging.getLogger(__name__)

INSTANCE_FIELDS = ("id", "name", "type", "state", "private_ip", "public_ip")


def _client(b3_session, config=None):
    region = config.region if config else None
    if b3_session:
        return b3_session.client("ec2", region_name=region)
    return boto3.client("ec2", region_name=region)


@contextmanager
def _aws_errors(action):
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise InstanceError(f"{action} failed: {e}") from e


def parse_filters(pairs):
    """
    Turn "Name=value" strings into EC2 API filters.

    Several values for one filter are separated by commas, so
    "instance-state-name=running,stopped" matches both states. Filters with
    the same name are merged.

    Args:
        pairs: iterable of strings

    Returns:
        list of {'Name': ..., 'Values': [...]} dictionaries
    """
    filters = dict()
    for pair in pairs or ():
        name, sep, values = pair.partition("=")
        if not sep or not name or not values:
            raise ValueError(f"Invalid filter {pair!r}, expected Name=value")
        filters.setdefault(name, []).extend(v for v in values.split(",") if v)
    return [{"Name": name, "Values": values} for name, values in filters.items()]


def _name_tag(instance):
    for tag in instance.get("Tags") or []:
        if tag["Key"] == "Name":
            return tag["Value"]
    return ""


def _row(instance):
    return {
        "id": instance["InstanceId"],
        "name": _name_tag(instance),
        "type": instance["InstanceType"],
        "state": instance["State"]["Name"],
        "private_ip": instance.get("PrivateIpAddress", ""),
        "public_ip": instance.get("PublicIpAddress", ""),
    }


def format_instance(row):
    return "\t".join(row[f] or "-" for f in INSTANCE_FIELDS)


def list_instances(filters=None, config=None, b3_session=None):
    """
    List EC2 instances.

    Args:
        filters: "Name=value" strings, see parse_filters(). They are added
            to the default filters from config.
        config: Config object, optional
        b3_session: Boto3 Session object. If passed to the function, boto3
            clients will be based off it, otherwise the default session will
            be used.

    Returns:
        list of dictionaries with the keys id, name, type, state, private_ip
        and public_ip, sorted by name and then id
    """
    config = config or Config()
    ec2 = _client(b3_session, config)
    request = dict()
    api_filters = parse_filters(list(config.instance_filters) + list(filters or ()))
    if api_filters:
        request["Filters"] = api_filters
    rows = list()
    with _aws_errors("Listing instances"):
        for page in ec2.get_paginator("describe_instances").paginate(**request):
            for reservation in page["Reservations"]:
                rows.extend(_row(i) for i in reservation["Instances"])
    return sorted(rows, key=lambda r: (r["name"], r["id"]))


def find_instances(name, filters=None, config=None, b3_session=None):
    """List instances whose Name tag matches name. '*' and '?' are wildcards."""
    filters = list(filters or ()) + [f"tag:Name={name}"]
    return list_instances(filters, config=config, b3_session=b3_session)


def ssh_command(name, user=None, config=None, b3_session=None):
    """
    Build the ssh command line for the running instance called name.

    The public IP address is used when the instance has one, the private
    one otherwise.

    Returns:
        argument list, e.g. ['ssh', 'ec2-user@203.0.113.10']

    Raises:
        InstanceNotFoundError: no running instance has that name
        AmbiguousInstanceError: more than one running instance has that name
    """
    config = config or Config()
    running = find_instances(
        name, ["instance-state-name=running"], config=config, b3_session=b3_session
    )
    if not running:
        raise InstanceNotFoundError(f"No running instance named {name}")
    if len(running) > 1:
        raise AmbiguousInstanceError(name, [r["id"] for r in running])
    address = running[0]["public_ip"] or running[0]["private_ip"]
    return ["ssh", f"{user or config.ssh_user}@{address}"]


def _state_changes(changes):
    return [
        (c["InstanceId"], c["PreviousState"]["Name"], c["CurrentState"]["Name"])
        for c in changes
    ]


def start_instances(instance_ids, config=None, b3_session=None):
    """
    Start instances.

    Returns:
        list of (instance id, previous state, current state) tuples
    """
    ec2 = _client(b3_session, config)
    with _aws_errors("Starting instances"):
        response = ec2.start_instances(InstanceIds=list(instance_ids))
    return _state_changes(response["StartingInstances"])


def stop_instances(instance_ids, config=None, b3_session=None):
    ec2 = _client(b3_session, config)
    with _aws_errors("Stopping instances"):
        response = ec2.stop_instances(InstanceIds=list(instance_ids))
    return _state_changes(response["StoppingInstances"])


def terminate_instances(instance_ids, config=None, b3_session=None):
    ec2 = _client(b3_session, config)
    with _aws_errors("Terminating instances"):
        response = ec2.terminate_instances(InstanceIds=list(instance_ids))
    return _state_changes(response["TerminatingInstances"])


def set_instance_type(instance_id, instance_type, config=None, b3_session=None):
    """
    Change the type of an instance. EC2 only allows this while the instance
    is stopped.
    """
    ec2 = _client(b3_session, config)
    with _aws_errors(f"Changing type of {instance_id}"):
        reservations = ec2.describe_instances(InstanceIds=[instance_id])["Reservations"]
        state = reservations[0]["Instances"][0]["State"]["Name"]
        if state != "stopped":
            raise InstanceError(f"Instance {instance_id} is {state}, it must be stopped first")
        ec2.modify_instance_attribute(
            InstanceId=instance_id, InstanceType={"Value": instance_type}
        )
    LOG.info("Instance %s is now %s", instance_id, instance_type)


def launch_like_instance(
    ami_id, model_id, count=1, copy_tags=True, set_tags=None, config=None, b3_session=None, **kwargs
):
    """
    Start new instances from the specified AMI, copying the settings
    (instance type, subnet, security groups, etc.) of another instance.

    Args:
        ami_id: ID of AMI to use for the new instances
        model_id: launch new instances in this one's likeness
        count: number of instances to start
        copy_tags: if True, tags present on the model instance are also set
            on the new ones
        set_tags: dictionary of tags to set on the new instances. They
            overwrite tags copied from the model instance with the same key.
        config: Config object, optional
        b3_session: Boto3 Session object, optional
        kwargs: any additional parameters are passed to the boto3 function
            ec2.create_instances() directly, e.g. ClientToken or
            PrivateIpAddress. Settings copied from the model (ImageId,
            InstanceType, KeyName, MaxCount, MinCount, Monitoring,
            SecurityGroupIds, SubnetId, EbsOptimized, IamInstanceProfile)
            can't be used here.

    Returns:
        list of IDs of the instances being created
    """
    region = config.region if config else None
    if b3_session:
        ec2 = b3_session.resource("ec2", region_name=region)
    else:
        ec2 = boto3.resource("ec2", region_name=region)
    with _aws_errors(f"Launching instances like {model_id}"):
        model = ec2.Instance(model_id)
        tags = dict()
        if copy_tags:
            # aws: tags are reserved and can't be set by users
            tags.update(
                (t["Key"], t["Value"])
                for t in model.tags or []
                if not t["Key"].startswith("aws:")
            )
        tags.update(set_tags or {})
        request = dict(
            ImageId=ami_id,
            InstanceType=model.instance_type,
            MaxCount=count,
            MinCount=count,
            Monitoring={"Enabled": model.monitoring["State"] == "enabled"},
            SecurityGroupIds=[g["GroupId"] for g in model.security_groups],
            SubnetId=model.subnet_id,
            EbsOptimized=model.ebs_optimized,
        )
        if model.key_name:
            request["KeyName"] = model.key_name
        if model.iam_instance_profile is not None:
            request["IamInstanceProfile"] = {"Arn": model.iam_instance_profile["Arn"]}
        if tags:
            request["TagSpecifications"] = [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                }
            ]
        instances = ec2.create_instances(**request, **kwargs)
    ids = [i.id for i in instances]
    LOG.info("Launched %s from %s like %s", ", ".join(ids), ami_id, model_id)
    return ids


def delete_available_volumes(dry_run=True, config=None, b3_session=None):
    """
    Delete EBS volumes that are not attached to any instance.

    Args:
        dry_run: only report the volumes, don't delete them
        config: Config object, optional
        b3_session: Boto3 Session object, optional

    Returns:
        list of IDs of the unattached volumes, in the order they were found
    """
    ec2 = _client(b3_session, config)
    volume_ids = list()
    with _aws_errors("Listing volumes"):
        paginator = ec2.get_paginator("describe_volumes")
        for page in paginator.paginate(Filters=[{"Name": "status", "Values": ["available"]}]):
            volume_ids.extend(v["VolumeId"] for v in page["Volumes"])
    if dry_run:
        return volume_ids
    for volume_id in volume_ids:
        with _aws_errors(f"Deleting volume {volume_id}"):
            ec2.delete_volume(VolumeId=volume_id)
        LOG.info("Deleted volume %s", volume_id)
    return volume_ids
