"""
Configuration management for the CI worker fleet controller.
"""

import json
import os
from dataclasses import dataclass, field
from typing import List, Optional

from models import WorkerTemplate


def load_templates(path: str) -> List[WorkerTemplate]:
    """
    Load worker templates from a JSON file holding a list of template objects.

    Raises:
        ValueError: If the file is not a list or a template is invalid
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of templates")
    templates = [WorkerTemplate.from_dict(item) for item in data]
    for template in templates:
        template.validate()
    return templates


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FleetConfig:
    """Configuration for one fleet controller process."""

    project_id: str
    controller_name: str = "fleet"
    credentials_file: Optional[str] = None
    instance_cap: Optional[int] = None
    fleet_id: Optional[str] = None
    templates: List[WorkerTemplate] = field(default_factory=list)
    agent_jar: Optional[str] = None
    launch_pool_size: int = 10
    reconcile_interval: int = 3600
    tick_interval: int = 60
    no_delay_provisioning: bool = True
    credit_pending_launches: bool = True
    dry_run: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "FleetConfig":
        """
        Create configuration from command-line arguments.

        A templates file, if given, takes precedence over the single template
        described by the --zone/--machine-type/... flags.

        Args:
            args: Parsed argparse arguments

        Returns:
            FleetConfig instance
        """
        if args.templates_file:
            templates = load_templates(args.templates_file)
        elif args.zone and args.name_prefix:
            template = WorkerTemplate(
                name_prefix=args.name_prefix,
                description=args.description or args.name_prefix,
                zone=args.zone,
                machine_type=args.machine_type,
                labels=args.labels or "",
                num_executors=args.executors,
                one_shot=args.one_shot,
                preemptible=args.preemptible,
                boot_disk_source_image=args.image or "",
                launch_timeout_seconds=args.launch_timeout,
            )
            template.validate()
            templates = [template]
        else:
            templates = []

        return cls(
            project_id=args.project,
            controller_name=args.controller_name,
            credentials_file=args.credentials_file,
            instance_cap=args.instance_cap,
            fleet_id=args.fleet_id,
            templates=templates,
            agent_jar=args.agent_jar,
            launch_pool_size=args.launch_pool_size,
            reconcile_interval=args.reconcile_interval,
            dry_run=args.dry_run,
            verbose=args.verbose,
        )

    def read_agent_payload(self) -> bytes:
        if not self.agent_jar:
            raise ValueError("No agent jar configured")
        with open(self.agent_jar, "rb") as f:
            return f.read()


@dataclass
class CloudFunctionConfig:
    """Configuration for Cloud Function operations."""

    project_id: str
    fleet_ids: List[str]
    controller_name: str = "fleet"
    dry_run: bool = True  # Default to True for safety
    timeout: int = 60

    @classmethod
    def from_env(cls, environ=None) -> "CloudFunctionConfig":
        """
        Read configuration from environment variables.

        Raises:
            ValueError: If GCP_PROJECT_ID or FLEET_IDS is missing
        """
        env = os.environ if environ is None else environ
        project_id = env.get("GCP_PROJECT_ID")
        if not project_id:
            raise ValueError("GCP_PROJECT_ID environment variable is required")
        fleet_ids = [f.strip() for f in env.get("FLEET_IDS", "").split(",") if f.strip()]
        if not fleet_ids:
            raise ValueError("FLEET_IDS environment variable is required")
        return cls(
            project_id=project_id,
            fleet_ids=fleet_ids,
            controller_name=env.get("CONTROLLER_NAME", "fleet"),
            dry_run=_env_bool(env.get("DRY_RUN"), True),
            timeout=int(env.get("API_TIMEOUT", "60")),
        )

