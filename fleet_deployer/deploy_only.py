import asyncio

from .models import Step
from .strategy import DeployManager


class DeployOnly(DeployManager):
    """New version without cutover checks: the new instances get a fixed settle time instead of polling"""

    async def deploy(self, config):
        if not self.can_run(Step.DEPLOY):
            return
        self.logger.info(f"Deploy mode is {self.deployer.mode.value}")
        await self.deploy_regions(config)
        self.done(Step.DEPLOY)

    async def health_checking(self, config):
        if not self.can_run(Step.HEALTH_CHECK):
            return
        self.logger.info(f"Skip health check, waiting {config.settle_delay_s}s for new instances to be ready")
        await asyncio.sleep(config.settle_delay_s)
        self.done(Step.HEALTH_CHECK)

    async def finish_additional_work(self, config):
        if not self.can_run(Step.ADDITIONAL_WORK):
            return
        if self.deployer.in_scope(config):
            await self.deployer.do_common_additional_work(config)
        self.done(Step.ADDITIONAL_WORK)

    async def clean_previous_version(self, config):
        if not self.can_run(Step.CLEAN_PREVIOUS_VERSION):
            return
        self.logger.debug(f"Delete mode is {self.deployer.mode.value}")
        if self.deployer.in_scope(config):
            await self.deployer.clean_previous_autoscaling_groups(config)
        self.done(Step.CLEAN_PREVIOUS_VERSION)
