"""
Functions to inspect and manage EC2 instances and CloudFormation stacks
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Functions related to a certain AWS service (EC2, CloudFormation) are placed
in a module with that service's name (ec2.py, cloudformation.py). Following
a stack's events until it settles lives in tail.py, and cli.py exposes all
of it as the ``awsfuncs`` command.
"""

__version__ = "0.1.0"
