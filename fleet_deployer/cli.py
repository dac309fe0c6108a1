import argparse
import asyncio
import importlib
import json
import sys
from dataclasses import asdict

from .collector import MetricsCollector
from .errors import ConfigurationError, DeploymentError
from .logger import LOG_LEVELS, get_logger, setup_logging
from .manifest import load_manifest
from .models import RunConfig
from .notifier import build_notifier
from .pipeline import Pipeline
from .simulator import SimulatedCloud


def load_provider_factory(spec):
    """Resolve ``module:callable`` into a provider factory"""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"provider must look like module:callable: {spec}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import provider module {module_name}: {e}")
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"provider factory is not callable: {spec}")
    return factory


def run_config_from_args(args):
    return RunConfig(
        region=args.region,
        stack=args.stack,
        timeout_s=args.timeout,
        polling_interval_s=args.polling_interval,
        force_manifest_capacity=getattr(args, "force_manifest_capacity", False),
        complete_canary=getattr(args, "complete_canary", False),
        disable_metrics=args.disable_metrics,
        slack_off=args.slack_off,
        ami=getattr(args, "ami", ""),
        override_instance_type=getattr(args, "override_instance_type", ""),
        extra_tags=getattr(args, "extra_tags", ""),
        release_notes=getattr(args, "release_notes", ""),
    )


def build_parser():
    parser = argparse.ArgumentParser(description="Multi-region autoscaling group deployer")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy", help="deploy a new version of every selected stack")
    delete = sub.add_parser("delete", help="remove every version of the selected stacks")

    for p in (deploy, delete):
        p.add_argument("--manifest", required=True)
        p.add_argument("--region", default="", help="restrict the run to one region")
        p.add_argument("--stack", default="", help="restrict the run to one stack")
        p.add_argument("--timeout", type=float, default=3600.0, help="seconds before polling gives up")
        p.add_argument("--polling-interval", type=float, default=60.0)
        p.add_argument("--disable-metrics", action="store_true")
        p.add_argument("--slack-off", action="store_true")
        p.add_argument("--provider", help="provider factory as module:callable")
        p.add_argument("--simulate", action="store_true", help="run against the in-memory cloud")

    deploy.add_argument("--force-manifest-capacity", action="store_true")
    deploy.add_argument("--complete-canary", action="store_true")
    deploy.add_argument("--ami", default="")
    deploy.add_argument("--override-instance-type", default="")
    deploy.add_argument("--extra-tags", default="", help="key1=value1,key2=value2")
    deploy.add_argument("--release-notes", default="")
    return parser


def select_provider(args):
    if args.simulate:
        return SimulatedCloud()
    if args.provider:
        return load_provider_factory(args.provider)
    raise ConfigurationError("no provider configured, use --provider module:callable or --simulate")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    logger = get_logger("cli")

    try:
        app = load_manifest(args.manifest)
        config = run_config_from_args(args)
        provider_factory = select_provider(args)
        pipeline = Pipeline(
            app,
            provider_factory,
            notifier=build_notifier(slack_off=args.slack_off),
            collector=MetricsCollector(enabled=not args.disable_metrics),
        )

        if args.cmd == "deploy":
            result = asyncio.run(pipeline.deploy(config))
        else:
            result = asyncio.run(pipeline.delete(config))
    except DeploymentError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)

    print(json.dumps(asdict(result), indent=2))
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
