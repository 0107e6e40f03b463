"""
Follow a stack's event log until the stack settles.

CloudFormation has no way to push events, so the log is polled. Every poll
returns the whole log; only events not seen in the previous poll are
reported. The newest event is held back from that comparison and checked on
its own, so a stack whose last known event turns out to be terminal is
noticed even on a poll that brought nothing new.
"""

import logging
import time

from awsfuncs import cloudformation
from awsfuncs.cloudformation import stack_name_from_id
from awsfuncs.config import Config
from awsfuncs.exceptions import StackNotFoundError, TailTimeout

LOG = logging.getLogger(__name__)


class StackTail:
    """
    Polling session for one stack.

    Args:
        stack_name: name or ID of the stack. The name is used to recognize
            the terminal event; for a stack ID it is taken from the ID.
        fetch: callable returning the ordered event list of a stack,
            cloudformation.list_events or anything with the same contract
        interval: seconds to wait between polls
        timeout: overall deadline in seconds, None for no deadline
        max_polls: maximum number of polls, None for no limit
        not_found_grace: seconds during which a missing stack is treated as
            a stack without events, as long as no poll has succeeded yet
        stack_ref: what to pass to fetch, defaults to stack_name. A stack ID
            keeps working after the stack is deleted.
        known: events logged before the request being followed. They are
            neither reported nor accepted as the end of the wait.
    """

    def __init__(
        self,
        stack_name,
        fetch,
        interval=1.0,
        timeout=None,
        max_polls=None,
        not_found_grace=0.0,
        stack_ref=None,
        known=(),
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.stack_name = stack_name_from_id(stack_name)
        self.stack_ref = stack_ref or stack_name
        self.fetch = fetch
        self.interval = interval
        self.timeout = timeout
        self.max_polls = max_polls
        self.not_found_grace = not_found_grace
        self.known = frozenset(known)
        self.sleep = sleep
        self.clock = clock

        self.previous = tuple(known)
        self.polls = 0
        self.found = False
        self._started = None

    @property
    def elapsed(self):
        if self._started is None:
            return 0.0
        return self.clock() - self._started

    def _fetch(self):
        try:
            events = self.fetch(self.stack_ref)
        except StackNotFoundError:
            if self.found or self.elapsed >= self.not_found_grace:
                raise
            LOG.debug("Stack %s not found yet, %.1fs into grace period", self.stack_ref, self.elapsed)
            return []
        self.found = True
        return events

    def advance(self, events):
        """
        Process the result of one poll.

        Returns:
            the events to report (everything but the newest event, minus
            what the previous poll already had) and the newest event. Both
            are empty/None when the poll returned nothing, in which case the
            previous snapshot is kept.
        """
        if not events:
            return [], None
        history, last = tuple(events[:-1]), events[-1]
        seen = set(self.previous) | self.known
        new = list()
        for event in history:
            if event not in seen:
                new.append(event)
                seen.add(event)
        self.previous = history
        return new, last

    def is_done(self, last):
        return last is not None and last not in self.known and last.is_terminal_for(self.stack_name)

    def poll(self):
        """Fetch the event log once and process it, see advance()"""
        if self._started is None:
            self._started = self.clock()
        self.polls += 1
        return self.advance(self._fetch())

    def follow(self):
        """
        Yield new events as they appear, then the terminal event once more.

        Raises:
            StackNotFoundError, StackEventsError: fetching the events failed.
                There is no retry.
            TailTimeout: the deadline or the poll limit was reached first
        """
        while True:
            new, last = self.poll()
            yield from new
            if self.is_done(last):
                break
            if self.max_polls is not None and self.polls >= self.max_polls:
                raise TailTimeout(self.stack_name, self.polls, self.elapsed)
            if self.timeout is not None and self.elapsed >= self.timeout:
                raise TailTimeout(self.stack_name, self.polls, self.elapsed)
            self.sleep(self.interval)
        LOG.debug("Stack %s settled after %d polls", self.stack_name, self.polls)
        yield last


def tail(
    stack_name,
    echo=print,
    config=None,
    b3_session=None,
    stack_ref=None,
    known=(),
    max_polls=None,
    fetch=None,
):
    """
    Print a stack's events until the stack reaches a terminal state.

    Every event is printed as "LogicalResourceId<TAB>ResourceType<TAB>
    ResourceStatus"; the event that ends the wait is printed twice, the
    second time as the final status line.

    Args:
        stack_name: name or ID of the stack to follow
        echo: called with every line to print
        config: Config supplying the poll interval, deadline, grace period
            and region. Defaults to Config().
        b3_session: Boto3 Session object, optional
        stack_ref: stack ID to read the events from, see StackTail
        known: events logged before the request being followed, see
            StackTail. Pass the events read just before updating or deleting
            a stack, so that the wait doesn't end on an earlier operation.
        max_polls: give up after this many polls
        fetch: replaces cloudformation.list_events, mostly for testing

    Returns:
        the terminal StackEvent
    """
    config = config or Config()
    if fetch is None:

        def fetch(ref):
            return cloudformation.list_events(ref, config=config, b3_session=b3_session)

    tailer = StackTail(
        stack_name,
        fetch,
        interval=config.poll_interval,
        timeout=config.tail_timeout,
        max_polls=max_polls,
        not_found_grace=config.not_found_grace,
        stack_ref=stack_ref,
        known=known,
    )
    last = None
    for event in tailer.follow():
        echo(str(event))
        last = event
    return last
