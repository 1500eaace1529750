"""Pass-through wrappers for scaffolding, building and deploying projects.

These run the toolchain synchronously against named project directories
under ``CONTRACTS_DIR`` and return the tool's output to the caller.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from contract_runner import config, toolchain
from contract_runner.errors import (
    ConflictError,
    ContractNotFoundError,
    ToolError,
    ValidationError,
)
from contract_runner.logging_config import get_logger
from contract_runner.models import ContractInfo, ToolResponse
from contract_runner.runner import ProcessResult, ProcessRunner
from contract_runner.settings import Settings, get_settings

logger = get_logger(__name__)


class ContractWorkspace:
    def __init__(
        self, settings: Settings | None = None, runner: ProcessRunner | None = None
    ) -> None:
        self.settings = settings or get_settings()
        self.runner = runner or ProcessRunner()

    @property
    def root(self) -> Path:
        return config.contracts_dir(self.settings)

    def list_contracts(self) -> list[ContractInfo]:
        contracts = []
        for path in sorted(self.root.iterdir()):
            if not path.is_dir() or not (path / "Cargo.toml").is_file():
                continue
            built = (path / "target").exists()
            contracts.append(
                ContractInfo(
                    name=path.name,
                    is_built=built,
                    status="built" if built else "created",
                )
            )
        return contracts

    async def create(
        self, name: str, contract_type: str = "erc", template: str = "erc20"
    ) -> ToolResponse:
        self._validate_name(name)
        if (self.root / name).exists():
            raise ConflictError(f"Contract {name} already exists")

        command = toolchain.new_contract_command(
            self.settings, name, contract_type, template
        )
        result = await self._run(
            command,
            cwd=self.root,
            timeout=self.settings.scaffold_timeout_sec,
        )
        self._check(result, "Failed to create contract", name)
        return ToolResponse(
            message=f"Contract {name} created successfully",
            contract_name=name,
            logs=result.stdout,
        )

    async def build(self, name: str) -> ToolResponse:
        project = self._project(name)
        result = await self._run(
            toolchain.build_command(self.settings),
            cwd=project,
            timeout=self.settings.compile_timeout_sec,
            target_dir=project,
        )
        self._check(result, "Failed to build contract", name)
        return ToolResponse(
            message=f"Contract {name} built successfully",
            contract_name=name,
            logs=result.stdout,
        )

    async def deploy(self, name: str) -> ToolResponse:
        project = self._project(name)
        if not (project / "target").exists():
            raise ValidationError(
                f"Contract {name} must be built before deployment. "
                "Use the build endpoint first."
            )
        result = await self._run(
            toolchain.deploy_command(self.settings),
            cwd=project,
            timeout=self.settings.deploy_timeout_sec,
            target_dir=project,
        )
        self._check(result, "Failed to deploy contract", name)
        return ToolResponse(
            message=f"Contract {name} deployed successfully",
            contract_name=name,
            address=toolchain.parse_address(result.stdout),
            logs=result.stdout,
        )

    async def warm_cache(self) -> ProcessResult:
        """Scaffold and build a throwaway project to fill the shared caches."""
        with tempfile.TemporaryDirectory(prefix="warm-cache-") as tmp:
            root = Path(tmp)
            name = "cache_warmer"
            scaffold = await self._run(
                toolchain.new_contract_command(self.settings, name, "erc", "erc20"),
                cwd=root,
                timeout=self.settings.scaffold_timeout_sec,
            )
            self._check(scaffold, "Failed to create contract", name)
            result = await self._run(
                toolchain.build_command(self.settings),
                cwd=root / name,
                timeout=self.settings.compile_timeout_sec,
                target_dir=root / name,
            )
            self._check(result, "Failed to build contract", name)
            logger.info("cache.warmed", cargo_home=self.settings.cargo_home)
            return result

    def _project(self, name: str) -> Path:
        self._validate_name(name)
        project = self.root / name
        if not project.is_dir():
            raise ContractNotFoundError(name)
        return project

    async def _run(
        self,
        command: list[str],
        *,
        cwd: Path,
        timeout: float,
        target_dir: Path | None = None,
    ) -> ProcessResult:
        env = toolchain.build_env(self.settings, target_dir or cwd)
        logger.info("tool.run", command=command, cwd=str(cwd))
        return await self.runner.collect(command, cwd=cwd, env=env, timeout=timeout)

    @staticmethod
    def _validate_name(name: str) -> None:
        if not toolchain.is_valid_contract_name(name):
            raise ValidationError(
                "Contract name must start with a letter and contain only "
                "letters, digits, '-' or '_'"
            )

    @staticmethod
    def _check(result: ProcessResult, message: str, name: str) -> None:
        if result.ok:
            return
        if result.launch_error:
            details = result.launch_error
        elif result.timed_out:
            details = "timeout exceeded, process terminated"
        else:
            details = result.stderr or f"exit code {result.exit_code}"
        logger.warning("tool.failed", contract=name, error=message, details=details)
        raise ToolError(message, details=details)
