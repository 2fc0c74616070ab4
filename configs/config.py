# File: configs/config.py

import ipaddress
import os
import string
from pathlib import Path
from typing import Optional

import yaml
from dacite import Config, from_dict
from dotenv import load_dotenv

from configs.models import AccessConfig, InfrastructureSpec
from utils.converters import deep_merge, drop_empty, to_bool
from utils.logger import configure_logger

LOGGER = configure_logger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent / "infrastructure.yaml"

# Environment variables that override the YAML access section
ACCESS_ENV_VARS = {
    "allowed_ip": "ALLOWED_IP",
    "allowed_prefix_id": "ALLOWED_PREFIX_ID",
}

# One entry per account in infrastructure.yaml (development is commented out there)
REQUIRED_ENV_VARS = {
    "sandbox": ["SANDBOX_ACCOUNT_ID", "SANDBOX_REGION"],
    "development": ["DEV_ACCOUNT_ID", "DEV_REGION"],
}


def normalise_cidr(value: str) -> str:
    """Return ``value`` as an IPv4 CIDR, adding ``/32`` to bare addresses."""
    try:
        network = ipaddress.IPv4Network(value.strip(), strict=False)
    except ValueError as e:
        raise ValueError(f"allowed_ip '{value}' is not a valid IPv4 address or CIDR") from e
    return network.with_prefixlen


def resolve_access(access: AccessConfig, allowed_ip: Optional[str] = None,
                   allowed_prefix_id: Optional[str] = None) -> AccessConfig:
    """Overlay explicit operator inputs on top of a loaded access section."""
    ip = allowed_ip or access.allowed_ip
    prefix_id = allowed_prefix_id or access.allowed_prefix_id
    return AccessConfig(
        allowed_ip=normalise_cidr(ip) if ip else None,
        allowed_prefix_id=prefix_id.strip() if prefix_id else None,
    )


class _TemplateLoader(yaml.SafeLoader):
    pass


class AppConfigs:

    def __init__(self, config_file=DEFAULT_CONFIG_FILE):
        self.config_file = Path(config_file)
        # Load environment variables from .env file if it exists
        env_file = Path(".env")
        if env_file.exists():
            load_dotenv(env_file)
            LOGGER.info("Loaded environment variables from .env file")
        else:
            LOGGER.debug("No .env file found, using system environment variables")

    def load_yaml(self, file, context):
        combined_context = {**os.environ, **context}

        def string_constructor(loader, node):
            return string.Template(node.value).substitute(combined_context)

        # Subclass per load so the substitution context never leaks between loads
        loader = type("ContextLoader", (_TemplateLoader,), {})
        loader.add_constructor("tag:yaml.org,2002:str", string_constructor)
        loader.add_implicit_resolver("tag:yaml.org,2002:str", string.Template.pattern, None)

        try:
            return yaml.load(file, Loader=loader)
        except KeyError as e:
            raise ValueError(
                f"{self.config_file} references undefined variable {e}. "
                f"Set it in the environment or in .env (see .env.example)."
            ) from e

    def from_yaml(self, *, context: dict[str, str] = None):
        if not self.config_file.exists():
            raise FileNotFoundError(f"Could not find YAML file at {self.config_file}")
        with open(self.config_file, "r") as file:
            data = self.load_yaml(file, context=context or {})
        return {} if data is None else data

    def validate_required_env_vars(self, account_name: str):
        """Validate that required environment variables are set"""
        required_vars = REQUIRED_ENV_VARS.get(account_name, [])
        missing_vars = [var for var in required_vars if not os.getenv(var)]

        if missing_vars:
            raise ValueError(
                f"Missing required environment variables for '{account_name}' environment: {missing_vars}\n"
                f"Please set these variables or create a .env file. See .env.example for reference."
            )

    def access_from_env(self) -> dict:
        return drop_empty({key: os.getenv(var) for key, var in ACCESS_ENV_VARS.items()})

    def get_infrastructure_info(self, account_name: str) -> InfrastructureSpec:
        self.validate_required_env_vars(account_name)

        data = drop_empty(self.from_yaml(context={"account": account_name}))
        globals_config = data.get("globals", {})
        accounts = data.get("accounts", [])
        account = next((x for x in accounts if x.get("name") == account_name), {})

        if not account:
            raise ValueError(f"Account '{account_name}' not found in {self.config_file.name}")

        merged_config = deep_merge(globals_config, account)
        merged_config.pop("name", None)
        merged_config = deep_merge(merged_config, {"access": self.access_from_env()})

        account_id = str(merged_config.get("account", "unknown"))
        masked_account = f"***{account_id[-4:]}" if account_id != "unknown" else "unknown"
        LOGGER.info(f"Using account: {masked_account} for environment: {account_name}")

        # Templated scalars arrive as strings
        dacite_config = Config(cast=[int], type_hooks={bool: to_bool})
        spec = from_dict(data_class=InfrastructureSpec, data=merged_config, config=dacite_config)
        spec.access = resolve_access(spec.access)
        return spec
