import logging
import os

import click

from awsfuncs import __version__, cloudformation, ec2
from awsfuncs.config import Config
from awsfuncs.exceptions import AwsFuncsError
from awsfuncs.tail import tail

LOG = logging.getLogger(__name__)

# how long a freshly created stack may be reported as missing while tailing
CREATE_NOT_FOUND_GRACE = 10.0

NOISY_LOGGERS = ("botocore", "boto3", "urllib3")


def setup_logging(debug=False):
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")
    logging.getLogger("awsfuncs").setLevel(log_level)
    for logger in NOISY_LOGGERS:
        logging.getLogger(logger).setLevel(logging.DEBUG if debug else logging.WARNING)


class State:
    """Per invocation settings, built by the top level command"""

    def __init__(self, config):
        self.config = config
        self._session = None

    @property
    def session(self):
        if self._session is None:
            self._session = self.config.session()
        return self._session


class AwsFuncsGroup(click.Group):
    """Group that reports library errors as plain messages with exit code 1"""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except AwsFuncsError as e:
            LOG.debug("Command failed", exc_info=True)
            raise click.ClickException(str(e)) from e


def _pairs(pairs, what):
    result = dict()
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"{pair!r} is not Key=Value", param_hint=what)
        result[key] = value
    return result


@click.group(name="awsfuncs", cls=AwsFuncsGroup, help="Inspect and manage EC2 instances and CloudFormation stacks")
@click.version_option(version=__version__, message="%(version)s")
@click.option("--region", help="AWS region, overrides AWSFUNCS_REGION")
@click.option("--profile", help="AWS profile, overrides AWSFUNCS_PROFILE")
@click.option("--debug", is_flag=True, help="Log AWS calls and other details")
@click.pass_context
def cli(ctx, region, profile, debug):
    setup_logging(debug)
    try:
        config = Config.from_env()
    except ValueError as e:
        raise click.UsageError(str(e))
    ctx.obj = State(config.override(region=region, profile=profile))


@cli.group(name="stacks", help="CloudFormation stacks")
def stacks():
    pass


@stacks.command(name="list", help="List stacks that are not deleted")
@click.pass_obj
def stacks_list(state):
    for name, status in cloudformation.list_stacks(b3_session=state.session):
        click.echo(f"{name}\t{status}")


@stacks.command(name="status", help="Print the status of a stack")
@click.argument("name")
@click.pass_obj
def stacks_status(state, name):
    click.echo(cloudformation.describe_status(name, b3_session=state.session))


@stacks.command(name="events", help="Print all events of a stack, oldest first")
@click.argument("name")
@click.pass_obj
def stacks_events(state, name):
    for event in cloudformation.list_events(name, b3_session=state.session):
        click.echo(str(event))


def _follow(state, name, stack_ref=None, known=(), grace=None, max_polls=None):
    config = state.config
    if grace is not None:
        config = config.override(not_found_grace=max(grace, config.not_found_grace))
    return tail(
        name,
        echo=click.echo,
        config=config,
        b3_session=state.session,
        stack_ref=stack_ref,
        known=known,
        max_polls=max_polls,
    )


def _known_events(state, name):
    # events of earlier operations, read before sending a new request
    return cloudformation.list_events(name, b3_session=state.session)


def _check_outcome(event):
    if event is not None and ("ROLLBACK" in event.status or event.status.endswith("_FAILED")):
        raise click.ClickException(f"Stack {event.logical_id} ended in {event.status}")


@stacks.command(name="tail", help="Print new events of a stack until it reaches a terminal state")
@click.argument("name", required=False)
@click.option("--interval", type=float, help="Seconds between polls")
@click.option("--timeout", type=float, help="Give up after this many seconds")
@click.option("--max-polls", type=click.IntRange(min=1), help="Give up after this many polls")
@click.option("--grace", type=float, help="Seconds to tolerate a stack that does not exist yet")
@click.pass_context
def stacks_tail(ctx, name, interval, timeout, max_polls, grace):
    if not name:
        click.echo(ctx.get_usage(), err=True)
        ctx.exit(1)
    state = ctx.obj
    state.config = state.config.override(
        poll_interval=interval, tail_timeout=timeout, not_found_grace=grace
    )
    _follow(state, name, max_polls=max_polls)


def _stack_request_args(template, parameters, capabilities, tags):
    try:
        params = cloudformation.parse_parameters(parameters)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--parameter")
    return dict(
        template_body=template.read(),
        parameters=params,
        capabilities=capabilities,
        tags=_pairs(tags, "--tag"),
    )


def _stack_options(f):
    f = click.option("--wait", is_flag=True, help="Follow the stack's events until it settles")(f)
    f = click.option("--tag", "tags", multiple=True, help="Key=Value, may be repeated")(f)
    f = click.option("--capability", "capabilities", multiple=True, help="e.g. CAPABILITY_IAM")(f)
    f = click.option("--parameter", "-p", "parameters", multiple=True, help="Key=Value, may be repeated")(f)
    f = click.argument("template", type=click.File("r"))(f)
    f = click.argument("name")(f)
    return f


@stacks.command(name="create", help="Create a stack from a template file")
@_stack_options
@click.pass_obj
def stacks_create(state, name, template, parameters, capabilities, tags, wait):
    args = _stack_request_args(template, parameters, capabilities, tags)
    stack_id = cloudformation.create_stack(name, b3_session=state.session, **args)
    click.echo(stack_id)
    if wait:
        _check_outcome(_follow(state, name, stack_ref=stack_id, grace=CREATE_NOT_FOUND_GRACE))


@stacks.command(name="update", help="Update a stack from a template file")
@_stack_options
@click.pass_obj
def stacks_update(state, name, template, parameters, capabilities, tags, wait):
    args = _stack_request_args(template, parameters, capabilities, tags)
    known = _known_events(state, name) if wait else ()
    stack_id = cloudformation.update_stack(name, b3_session=state.session, **args)
    if stack_id is None:
        click.echo(f"Stack {name} is up to date")
        return
    click.echo(stack_id)
    if wait:
        _check_outcome(_follow(state, name, stack_ref=stack_id, known=known))


@stacks.command(name="delete", help="Delete a stack")
@click.argument("name")
@click.option("--wait", is_flag=True, help="Follow the stack's events until it is gone")
@click.pass_obj
def stacks_delete(state, name, wait):
    known = _known_events(state, name) if wait else ()
    stack_id = cloudformation.delete_stack(name, b3_session=state.session)
    click.echo(stack_id)
    if wait:
        _check_outcome(_follow(state, name, stack_ref=stack_id, known=known))


@stacks.command(name="outputs", help="Print the outputs of a stack")
@click.argument("name")
@click.pass_obj
def stacks_outputs(state, name):
    for key, value in sorted(cloudformation.stack_outputs(name, b3_session=state.session).items()):
        click.echo(f"{key}\t{value}")


@stacks.command(name="resources", help="Print the resources of a stack")
@click.argument("name")
@click.pass_obj
def stacks_resources(state, name):
    for resource in cloudformation.stack_resources(name, b3_session=state.session):
        click.echo("\t".join(resource))


@stacks.command(name="diff", help="Compare the deployed template of a stack with a local file")
@click.argument("name")
@click.argument("template", type=click.File("r"))
@click.pass_context
def stacks_diff(ctx, name, template):
    lines = cloudformation.template_diff(name, template.read(), b3_session=ctx.obj.session)
    for line in lines:
        click.echo(line)
    # same convention as diff(1)
    ctx.exit(1 if lines else 0)


@cli.group(name="instances", help="EC2 instances")
def instances():
    pass


@instances.command(name="list", help="List instances: id, name, type, state, private and public IP")
@click.option("--filter", "-f", "filters", multiple=True, help="Name=value[,value], may be repeated")
@click.pass_obj
def instances_list(state, filters):
    try:
        rows = ec2.list_instances(filters, config=state.config, b3_session=state.session)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--filter")
    for row in rows:
        click.echo(ec2.format_instance(row))


@instances.command(name="ssh", help="Open an ssh session to the running instance with the given Name tag")
@click.argument("name")
@click.option("--user", help="Overrides AWSFUNCS_SSH_USER")
@click.option("--print", "print_only", is_flag=True, help="Print the command instead of running it")
@click.pass_obj
def instances_ssh(state, name, user, print_only):
    command = ec2.ssh_command(name, user=user, config=state.config, b3_session=state.session)
    if print_only:
        click.echo(" ".join(command))
        return
    LOG.debug("Running %s", command)
    os.execvp(command[0], command)


def _echo_state_changes(changes):
    for instance_id, previous, current in changes:
        click.echo(f"{instance_id}\t{previous}\t{current}")


@instances.command(name="start", help="Start instances")
@click.argument("instance_ids", nargs=-1, required=True)
@click.pass_obj
def instances_start(state, instance_ids):
    _echo_state_changes(ec2.start_instances(instance_ids, config=state.config, b3_session=state.session))


@instances.command(name="stop", help="Stop instances")
@click.argument("instance_ids", nargs=-1, required=True)
@click.pass_obj
def instances_stop(state, instance_ids):
    _echo_state_changes(ec2.stop_instances(instance_ids, config=state.config, b3_session=state.session))


@instances.command(name="terminate", help="Terminate instances")
@click.argument("instance_ids", nargs=-1, required=True)
@click.confirmation_option(prompt="Terminate these instances?")
@click.pass_obj
def instances_terminate(state, instance_ids):
    _echo_state_changes(
        ec2.terminate_instances(instance_ids, config=state.config, b3_session=state.session)
    )


@instances.command(name="set-type", help="Change the type of a stopped instance")
@click.argument("instance_id")
@click.argument("instance_type")
@click.pass_obj
def instances_set_type(state, instance_id, instance_type):
    ec2.set_instance_type(instance_id, instance_type, config=state.config, b3_session=state.session)


@instances.command(name="launch", help="Launch instances from an AMI with the settings of another instance")
@click.argument("ami_id")
@click.argument("model_id")
@click.option("--count", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--copy-tags/--no-copy-tags", default=True, help="Copy the model instance's tags")
@click.option("--tag", "tags", multiple=True, help="Key=Value, may be repeated")
@click.pass_obj
def instances_launch(state, ami_id, model_id, count, copy_tags, tags):
    ids = ec2.launch_like_instance(
        ami_id,
        model_id,
        count=count,
        copy_tags=copy_tags,
        set_tags=_pairs(tags, "--tag"),
        config=state.config,
        b3_session=state.session,
    )
    for instance_id in ids:
        click.echo(instance_id)


@cli.group(name="volumes", help="EBS volumes")
def volumes():
    pass


@volumes.command(name="cleanup", help="List unattached volumes, and delete them with --delete")
@click.option("--delete", is_flag=True, help="Actually delete the volumes")
@click.pass_obj
def volumes_cleanup(state, delete):
    for volume_id in ec2.delete_available_volumes(
        dry_run=not delete, config=state.config, b3_session=state.session
    ):
        click.echo(volume_id)


def main():
    cli(prog_name="awsfuncs")


if __name__ == "__main__":
    main()
