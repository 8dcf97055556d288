"""keystack - render and deploy an EC2 instance stack for an SSH public key.

Loads an OpenSSH public key, renders it into a CloudFormation template
(VPC, subnet, security group, key pair, instance) and submits the result
as a named stack.
"""

try:
    from importlib.metadata import version

    __version__ = version("keystack")
except Exception:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]
