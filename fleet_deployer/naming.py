"""Deterministic names for versioned resources.

Every autoscaling group is named ``<app>-<env>_<region>-vNNN`` so previous
versions can be discovered by a prefix scan alone.
"""
import re
import time

VERSION_MODULUS = 1000
CANARY_MARK = "canary"
DEPLOYMENT_TAG_KEY = "deployment-type"

_TARGET_GROUP_ARN = re.compile(r"^arn:[\w-]+:elasticloadbalancing:(?P<region>[\w-]+):\d*:targetgroup/(?P<name>[^/]+)/")


def build_prefix(app, env, region):
    return f"{app}-{env}_{region.replace('-', '')}"


def parse_version(name):
    """Version from the trailing ``-vNNN`` part of a resource name, 0 when there is none

    App and env names may hold ``v<digits>`` parts of their own, so only the
    last part counts.
    """
    last = name.split("-")[-1]
    if last.startswith("v") and last[1:].isdigit():
        return int(last[1:])
    return 0


def next_version(prev_versions):
    if not prev_versions:
        return 0
    return (max(prev_versions) + 1) % VERSION_MODULUS


def asg_name(prefix, version):
    return f"{prefix}-v{version:03d}"


def launch_template_name(asg, now=None):
    secs = int(now if now is not None else time.time())
    return f"{asg}-{secs}"


def canary_target_group_name(app, env, version):
    return f"{app}-{env}-{CANARY_MARK}-v{version:03d}"


def canary_load_balancer_name(app, env, region):
    return f"{app}-{env}-{region.replace('-', '')}-{CANARY_MARK}"


def canary_security_group_name(app, env, region):
    return f"{app}-{env}-{region.replace('-', '')}-{CANARY_MARK}"


def canary_lb_security_group_name(app, env, region):
    return f"{app}-{env}-{region.replace('-', '')}-lb-{CANARY_MARK}"


def is_target_group_arn(value, region):
    match = _TARGET_GROUP_ARN.match(value)
    return bool(match) and match.group("region") == region


def is_canary_target_group_arn(value, region):
    return is_target_group_arn(value, region) and CANARY_MARK in value


def target_group_name_from_arn(arn):
    return arn.split("/")[1]


def check_canary_version(target_group_arns, region):
    """Highest canary version among the given target group ARNs"""
    latest = 0
    for arn in target_group_arns:
        if not is_canary_target_group_arn(arn, region):
            continue
        version = parse_version(target_group_name_from_arn(arn))
        if version > latest:
            latest = version
    return latest
