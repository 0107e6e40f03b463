class AwsFuncsError(Exception):
    """Base class for errors raised by awsfuncs"""


class StackError(AwsFuncsError):
    def __init__(self, stack_name, message=None):
        self.stack_name = stack_name
        super().__init__(message or f"Stack {stack_name}: request failed")


class StackNotFoundError(StackError):
    def __init__(self, stack_name, message=None):
        super().__init__(stack_name, message or f"Stack {stack_name} does not exist")


class StackEventsError(StackError):
    """Fetching a stack's events failed for any reason other than a missing stack"""


class TailTimeout(AwsFuncsError):
    def __init__(self, stack_name, polls, elapsed):
        self.stack_name = stack_name
        self.polls = polls
        self.elapsed = elapsed
        super().__init__(
            f"Stack {stack_name} did not reach a terminal state "
            f"after {polls} polls ({elapsed:.0f}s)"
        )


class InstanceError(AwsFuncsError):
    pass


class InstanceNotFoundError(InstanceError):
    pass


class AmbiguousInstanceError(InstanceError):
    def __init__(self, name, instance_ids):
        self.name = name
        self.instance_ids = instance_ids
        super().__init__(
            f"{len(instance_ids)} instances match {name}: {', '.join(instance_ids)}"
        )
