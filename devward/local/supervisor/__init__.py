"""
The Supervisor package.
Manages the lifecycle of the developer's local services.

This package contains the ServiceController class and its helper modules,
which together handle building, launching, verifying, stopping and reporting
on every service defined in a project's config file.
"""
from .config_utils import ProjectConfig, build_targets, load_config, select_targets
from .definition import OperationConfig, ServiceDefinition
from .errors import DevwardError
from .group import Outcome, OperationResult, ServiceGroup, ServiceLeaf, run_for_targets
from .supervisor import ServiceController, ServiceStatus

__all__ = [
    'ProjectConfig', 'build_targets', 'load_config', 'select_targets',
    'OperationConfig', 'ServiceDefinition', 'DevwardError',
    'Outcome', 'OperationResult', 'ServiceGroup', 'ServiceLeaf', 'run_for_targets',
    'ServiceController', 'ServiceStatus',
]
