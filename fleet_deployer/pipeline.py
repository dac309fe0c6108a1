import asyncio

from .bluegreen import BlueGreen
from .canary import Canary
from .deploy_only import DeployOnly
from .deployer import Deployer
from .errors import ConfigurationError
from .logger import get_logger
from .models import DeploymentMode, PipelineResult
from .notifier import Notifier
from .rolling_update import RollingUpdate

STRATEGIES = {
    DeploymentMode.BLUE_GREEN: BlueGreen,
    DeploymentMode.CANARY: Canary,
    DeploymentMode.ROLLING_UPDATE: RollingUpdate,
    DeploymentMode.DEPLOY_ONLY: DeployOnly,
}

DEPLOY_PHASES = [
    "check_previous_resources",
    "deploy",
    "health_checking",
    "finish_additional_work",
    "trigger_lifecycle_callbacks",
    "clean_previous_version",
    "clean_checking",
    "gather_metrics",
    "run_api_test",
]

DELETE_PHASES = [
    "check_previous_resources",
    "trigger_lifecycle_callbacks",
    "clean_previous_version",
    "clean_checking",
    "gather_metrics",
]


def strategy_class(mode):
    try:
        return STRATEGIES[DeploymentMode(mode)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"unknown replacement type: {mode}")


class Pipeline:
    """Runs every selected stack through the deploy or delete phases.

    All stacks execute a phase concurrently and the next phase starts only
    once every stack has finished the current one without error.
    ``provider_factory(region)`` returns the cloud client for a region.
    """

    def __init__(self, app, provider_factory, notifier=None, collector=None, api_tester_factory=None):
        self.app = app
        self.provider_factory = provider_factory
        self.notifier = notifier if notifier else Notifier()
        self.collector = collector
        self.api_tester_factory = api_tester_factory
        self.logger = get_logger("pipeline")

    def select_stacks(self, config):
        if not config.stack:
            return list(self.app.stacks)
        stacks = [s for s in self.app.stacks if s.stack == config.stack]
        if not stacks:
            raise ConfigurationError(f"stack does not exist in the manifest: {config.stack}")
        return stacks

    def build_strategies(self, config):
        stacks = self.select_stacks(config)
        # resolve every strategy before the first client is created
        classes = [strategy_class(s.replacement_type) for s in stacks]

        strategies = []
        for stack, cls in zip(stacks, classes):
            clients = {r.region: self.provider_factory(r.region) for r in stack.regions}
            deployer = Deployer(self.app, stack, clients, notifier=self.notifier, collector=self.collector,
                                api_tester_factory=self.api_tester_factory)
            strategies.append(cls(deployer))
        return strategies

    async def _run_phase(self, phase, strategies, config):
        """Run one phase on every strategy; the first error in stack order is raised"""
        tasks = [getattr(s, phase)(config) for s in strategies]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        errors = []
        for strategy, outcome in zip(strategies, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(f"[{strategy.get_stack_name()}] {phase} failed: {outcome}")
                errors.append(outcome)
        if errors:
            raise errors[0]

    async def run_phases(self, phases, strategies, config, result, delete=False):
        for phase in phases:
            self.logger.info(f"Starting phase {phase} for {len(strategies)} stacks")
            result.history.append({"event": "phase_start", "phase": phase})
            try:
                await self._run_phase(phase, strategies, config)
            except Exception as e:
                result.success = False
                result.failed_phase = phase
                result.error = str(e)
                result.history.append({"event": "phase_failed", "phase": phase, "error": str(e)})
                self.logger.error(f"ABORTED in {phase}: {e}")
                return False

            result.phases.append(phase)
            result.history.append({"event": "phase_completed", "phase": phase})

            if delete and phase == "check_previous_resources":
                for strategy in strategies:
                    strategy.skip_deploy_step()
        return True

    def _collect(self, strategies, result, delete):
        for strategy in strategies:
            deployer = strategy.deployer
            name = strategy.get_stack_name()
            if not delete:
                created = [s.asg_name for s in deployer.regions.values() if s.asg_name]
                if created:
                    result.created[name] = created
            deleted = deployer.deleted_groups()
            if deleted:
                result.deleted[name] = deleted

    async def _execute(self, phases, config, delete):
        strategies = self.build_strategies(config)
        action = "delete" if delete else "deploy"
        names = ", ".join(s.get_stack_name() for s in strategies)

        self.logger.info(f"Starting {action} of {self.app.name}: {names}")
        await self.notifier.send_simple_message(f"Starting {action} of {self.app.name}: {names}")

        result = PipelineResult(success=False)
        if await self.run_phases(phases, strategies, config, result, delete=delete):
            result.success = True
        self._collect(strategies, result, delete)

        if result.success:
            self.logger.info(f"SUCCESS: {action} of {self.app.name} completed")
            await self.notifier.send_simple_message(f":100: {action} of {self.app.name} completed: {names}")
        else:
            await self.notifier.send_simple_message(
                f":x: {action} of {self.app.name} failed in {result.failed_phase}: {result.error}")
        return result

    async def deploy(self, config):
        return await self._execute(DEPLOY_PHASES, config, delete=False)

    async def delete(self, config):
        """Remove every version of the selected stacks without creating a new one"""
        return await self._execute(DELETE_PHASES, config, delete=True)
