"""Deployment history and per-group statistics.

Records are kept in memory, keyed by autoscaling group name. A storage
backend can subclass ``MetricsCollector`` and override the four record
methods.
"""
import time

from .logger import get_logger

MONTH_S = 30 * 24 * 3600  # longest window the provider keeps request metrics for


class MetricsCollector:
    def __init__(self, enabled=True, clock=time.time):
        self.enabled = enabled
        self.clock = clock
        self.records = {}
        self.logger = get_logger("collector")

    async def stamp_deployment(self, stack, config, tags, asg, status, additional_fields=None):
        record = {
            "stack": stack.stack,
            "env": stack.env,
            "mode": stack.replacement_type.value,
            "tags": dict(tags),
            "config": {"region": config.region, "ami": config.ami,
                       "force_manifest_capacity": config.force_manifest_capacity},
            "deployment_status": status,
            "deployed_date": self.clock(),
        }
        record.update(additional_fields or {})
        self.records[asg] = record
        self.logger.debug(f"deployment recorded: {asg} ({status})")

    async def update_status(self, asg, status, update_fields=None):
        record = self.records.setdefault(asg, {})
        record["deployment_status"] = status
        if status == "terminated":
            record["terminated_date"] = self.clock()
        record.update(update_fields or {})

    async def update_statistics(self, asg, update_fields):
        record = self.records.setdefault(asg, {})
        record.setdefault("statistics", {}).update(update_fields)

    async def get_additional_metric(self, client, asg, target_groups, load_balancers):
        """Uptime of the group plus request counts since it was deployed"""
        now = self.clock()
        ret = {}
        deployed = self.records.get(asg, {}).get("deployed_date")
        if deployed is None:
            self.logger.warning(f"there is no deployment record for {asg}")
            return ret

        uptime = now - deployed
        ret["uptime_second"] = uptime
        ret["uptime_hour"] = uptime / 3600

        start = max(deployed, now - MONTH_S)
        if target_groups:
            ret["target_group_request_count"] = await client.get_request_count(target_groups, start, now)
        if load_balancers:
            ret["load_balancer_request_count"] = await client.get_request_count(load_balancers, start, now)
        return ret

    def status_of(self, asg):
        return self.records.get(asg, {}).get("deployment_status")
