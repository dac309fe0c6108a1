from .models import Step
from .strategy import DeployManager


class BlueGreen(DeployManager):
    """Stand up a full new version next to the old one, then drain the old one"""

    async def deploy(self, config):
        if not self.can_run(Step.DEPLOY):
            return
        self.logger.info(f"Deploy mode is {self.deployer.mode.value}")
        await self.deploy_regions(config)
        self.done(Step.DEPLOY)

    async def health_checking(self, config):
        if not self.can_run(Step.HEALTH_CHECK):
            return
        await self.deployer.wait_healthy(config)
        self.done(Step.HEALTH_CHECK)

    async def finish_additional_work(self, config):
        if not self.can_run(Step.ADDITIONAL_WORK):
            return
        if self.deployer.in_scope(config):
            await self.deployer.do_common_additional_work(config)
        self.logger.debug("Finish additional works")
        self.done(Step.ADDITIONAL_WORK)

    async def clean_previous_version(self, config):
        if not self.can_run(Step.CLEAN_PREVIOUS_VERSION):
            return
        if self.deployer.in_scope(config):
            await self.deployer.clean_previous_autoscaling_groups(config)
        self.done(Step.CLEAN_PREVIOUS_VERSION)
