"""Composition root: builds one set of harness components per process."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fetch_harness.config import Config, load_config
from fetch_harness.harness.executor import HarnessExecutor
from fetch_harness.harness.pool import HarnessPool
from fetch_harness.harness.registry import AdapterRegistry, create_default_registry
from fetch_harness.harness.spawner import HarnessSpawner
from fetch_harness.integration import TaskIntegration, WorkspaceResolver
from fetch_harness.logging import EventLogger, LogLevel
from fetch_harness.task import TaskConstraints
from fetch_harness.task_manager import TaskManager
from fetch_harness.task_store import JsonTaskStore


@dataclass
class HarnessRuntime:
    """Every long-lived component, wired together."""

    config: Config
    project_dir: Path
    event_logger: EventLogger
    task_manager: TaskManager
    registry: AdapterRegistry
    spawner: HarnessSpawner
    pool: HarnessPool
    executor: HarnessExecutor
    integration: TaskIntegration

    @property
    def state_dir(self) -> Path:
        return self.project_dir / self.config.paths.state_dir

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @classmethod
    def from_config(
        cls,
        config: Config,
        project_dir: Path,
        workspace_resolver: Optional[WorkspaceResolver] = None,
        registry: Optional[AdapterRegistry] = None,
    ) -> "HarnessRuntime":
        """
        Build the runtime for a project.

        Args:
            config: Loaded configuration.
            project_dir: Directory holding .fetch.yaml and the state dir.
            workspace_resolver: Maps workspace names to paths.
            registry: Adapter registry. Defaults to the built-in adapters
                enabled in the configuration.
        """
        project_dir = Path(project_dir)
        state_dir = project_dir / config.paths.state_dir

        event_logger = EventLogger(state_dir / "logs", min_level=LogLevel(config.logging.level))

        if registry is None:
            registry = create_default_registry(event_logger, enabled=config.agents.enabled)

        task_manager = TaskManager(
            store=JsonTaskStore(state_dir),
            event_logger=event_logger,
            default_agent=config.agents.default,
            known_agents=registry.list_agents(),
            default_constraints=TaskConstraints(
                timeout_ms=config.tasks.timeout_ms,
                require_approval=config.tasks.require_approval,
                max_retries=config.tasks.max_retries,
            ),
        )
        task_manager.init()

        spawner = HarnessSpawner(
            event_logger=event_logger,
            kill_grace_seconds=config.pool.kill_grace_seconds,
        )
        pool = HarnessPool(
            spawner=spawner,
            max_concurrent=config.pool.max_concurrent,
            default_timeout_ms=config.pool.default_timeout_ms,
            event_logger=event_logger,
        )
        executor = HarnessExecutor(
            pool=pool,
            registry=registry,
            event_logger=event_logger,
            max_output_bytes=config.parser.max_output_bytes,
            strip_ansi=config.parser.strip_ansi,
            max_line_length=config.parser.max_line_length,
            log_output_lines=config.logging.log_output_lines,
        )

        if workspace_resolver is None and config.paths.workspace_root:
            workspace_resolver = _root_resolver(Path(config.paths.workspace_root).expanduser())

        integration = TaskIntegration(
            task_manager=task_manager,
            executor=executor,
            workspace_resolver=workspace_resolver,
            event_logger=event_logger,
        )

        return cls(
            config=config,
            project_dir=project_dir,
            event_logger=event_logger,
            task_manager=task_manager,
            registry=registry,
            spawner=spawner,
            pool=pool,
            executor=executor,
            integration=integration,
        )

    @classmethod
    def load(cls, project_dir: Optional[Path] = None) -> "HarnessRuntime":
        """Load .fetch.yaml from the project directory and build the runtime."""
        project_dir = Path(project_dir) if project_dir else Path.cwd()
        return cls.from_config(load_config(project_dir), project_dir)

    async def shutdown(self) -> None:
        """Stop all agent processes."""
        await self.pool.shutdown()


def _root_resolver(root: Path) -> WorkspaceResolver:
    """Resolve relative workspace names against a root directory."""

    def resolve(workspace: str) -> str:
        path = Path(workspace).expanduser()
        if not path.is_absolute():
            path = root / path
        return str(path.resolve())

    return resolve
