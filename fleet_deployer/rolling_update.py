from . import naming
from .capacity import initial_rolling_capacity, is_finished_rolling_update, retrieve_next_capacity
from .deployer import ROLLING_UPDATE_MARK
from .errors import DeploymentTimeout
from .models import Step
from .polling import check_timeout
from .strategy import DeployManager


class RollingUpdate(DeployManager):
    """Grow the new group and shrink the previous ones in steps of ``rolling_update_instance_count``.

    The new group is tagged as a rolling update until it reaches its target
    capacity, so no other deployment of the stack starts meanwhile.
    """

    def __init__(self, deployer):
        super().__init__(deployer)
        self.targets = {}  # region -> Capacity the new group grows to

    @property
    def step_size(self):
        return max(1, self.deployer.stack.rolling_update_instance_count)

    async def deploy(self, config):
        if not self.can_run(Step.DEPLOY):
            return
        self.logger.info(f"Deploy mode is {self.deployer.mode.value}")

        for region in self.deployer.selected_regions(config):
            state = self.deployer.regions[region.region]
            target = self.deployer.decide_capacity(config, state)
            self.targets[region.region] = target

            capacity = target
            if state.prev_asgs:
                capacity = initial_rolling_capacity(self.step_size, target)
            self.logger.debug(f"[{region.region}] rolling update starts at {capacity}, target {target}")
            await self.deployer.deploy_region(config, region, capacity=capacity, deployment_type=ROLLING_UPDATE_MARK)

        self.done(Step.DEPLOY)

    async def health_checking(self, config):
        if not self.can_run(Step.HEALTH_CHECK):
            return
        await self.deployer.wait_healthy(config)
        self.done(Step.HEALTH_CHECK)

    async def complete_rolling_update(self, config, region):
        """Step both sides until the new group is at target and every previous group is empty"""
        state = self.deployer.regions[region]
        target = self.targets[region]
        current = state.applied_capacity
        previous_done = False

        while not (is_finished_rolling_update(current, target) and previous_done):
            if check_timeout(config.start_timestamp, config.timeout_s):
                raise DeploymentTimeout(config.timeout_s, f"rolling update of {state.asg_name}")

            if not previous_done:
                previous_done = await self.deployer.reduce_previous_capacity(config, region, self.step_size)

            if not is_finished_rolling_update(current, target):
                current = retrieve_next_capacity(current, target, self.step_size)
                self.logger.debug(f"Rolling update of autoscaling group: {current}")
                await self.deployer.resize(config, region, state.asg_name, current)
                await self.deployer.wait_healthy(config)

        await self.deployer.client(region).delete_tag(state.asg_name, naming.DEPLOYMENT_TAG_KEY)
        self.logger.info(f"Rolling update finished: {state.asg_name} ({current})")

    async def finish_additional_work(self, config):
        if not self.can_run(Step.ADDITIONAL_WORK):
            return
        if self.deployer.in_scope(config):
            for region in self.deployer.selected_regions(config):
                await self.complete_rolling_update(config, region.region)
            await self.deployer.do_common_additional_work(config)
        self.logger.debug("Finish additional works")
        self.done(Step.ADDITIONAL_WORK)

    async def clean_previous_version(self, config):
        if not self.can_run(Step.CLEAN_PREVIOUS_VERSION):
            return
        if self.targets:
            self.logger.debug("Skip resizing previous versions because they were emptied while rolling")
        elif self.deployer.in_scope(config):
            # nothing was rolled in this run (delete), so empty them here
            await self.deployer.clean_previous_autoscaling_groups(config)
        self.done(Step.CLEAN_PREVIOUS_VERSION)
