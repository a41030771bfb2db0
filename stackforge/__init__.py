"""
Stackforge

A declarative infrastructure-provisioning engine. Executes templates in the
CloudFormation document format: parse, resolve references, order by
dependency, provision against a cloud provider and persist the result.
"""

__version__ = "1.0.0"
__author__ = "Stackforge Team"
