"""Cluster provisioning: local directories or SSH hosts."""

from .base import InfraManager, Infrastructure, Node, NODE_OUTPUT_DIR
from .local import LocalInfraManager, LocalInfrastructure
from .ssh import SshClient, SshInfraManager, SshInfrastructure

__all__ = [
    'InfraManager',
    'Infrastructure',
    'Node',
    'NODE_OUTPUT_DIR',
    'LocalInfraManager',
    'LocalInfrastructure',
    'SshClient',
    'SshInfraManager',
    'SshInfrastructure',
]
