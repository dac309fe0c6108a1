from .logger import get_logger
from .models import Step


class DeployManager:
    """Phase handlers shared by every replacement strategy.

    A handler does nothing unless the phase before it has completed, and marks
    its own phase only when it finishes without raising. Subclasses provide
    ``deploy``, ``health_checking``, ``finish_additional_work`` and
    ``clean_previous_version``.
    """

    def __init__(self, deployer):
        self.deployer = deployer
        self.logger = get_logger(f"{type(self).__name__.lower()}.{deployer.get_stack_name()}")

    @property
    def step_status(self):
        return self.deployer.step_status

    def can_run(self, step):
        if not self.step_status.can_run(step):
            self.logger.debug(f"{step.name} is skipped because the previous step did not finish")
            return False
        return True

    def done(self, step):
        self.step_status.mark(step)

    def get_stack_name(self):
        return self.deployer.get_stack_name()

    def skip_deploy_step(self):
        self.deployer.skip_deploy_step()

    async def deploy_regions(self, config, **kwargs):
        for region in self.deployer.selected_regions(config):
            await self.deployer.deploy_region(config, region, **kwargs)

    async def check_previous_resources(self, config):
        await self.deployer.check_previous(config)

    async def deploy(self, config):
        raise NotImplementedError

    async def health_checking(self, config):
        raise NotImplementedError

    async def finish_additional_work(self, config):
        raise NotImplementedError

    async def trigger_lifecycle_callbacks(self, config):
        if not self.can_run(Step.TRIGGER_LIFECYCLE_CALLBACK):
            return
        await self.deployer.trigger_lifecycle_callbacks(config)
        self.done(Step.TRIGGER_LIFECYCLE_CALLBACK)

    async def clean_previous_version(self, config):
        raise NotImplementedError

    async def clean_checking(self, config):
        if not self.can_run(Step.CLEAN_CHECKING):
            return
        await self.deployer.wait_clean(config)
        self.done(Step.CLEAN_CHECKING)

    async def gather_metrics(self, config):
        if not self.can_run(Step.GATHER_METRICS):
            return
        if config.disable_metrics or not self.deployer.collector.enabled:
            self.logger.debug("metrics gathering is disabled")
        elif self.deployer.in_scope(config):
            await self.deployer.start_gathering_metrics(config)
        self.done(Step.GATHER_METRICS)

    async def run_api_test(self, config):
        if not self.can_run(Step.RUN_API_TEST):
            return
        await self.deployer.run_api_test(config)
        self.done(Step.RUN_API_TEST)
