# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Parsers for Docker Compose YAML files.
"""
import logging
import os
import shlex
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.controller_settings import ControllerSettings
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import HealthCheck, PortMapping, Service, VolumeMount
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import ComposeError

logger = logging.getLogger(__name__)

SETTINGS_KEY = "x-topoctl"
REQUIRED_ENV_KEY = "x-required-env"


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """

    def __init__(self, context: Optional[Dict[str, str]] = None, base_dir: Optional[str] = None):
        """
        :param context: Variables for ${VAR} interpolation; defaults to the process environment.
        :param base_dir: Directory env files are resolved against; defaults to
            the compose file's directory, or the current directory for strings.
        """
        self.context = dict(os.environ) if context is None else context
        self.base_dir = base_dir

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        try:
            with open(compose_path, "r") as f:
                content = f.read()
        except OSError as e:
            raise ComposeError(f"Cannot read {compose_path}: {e}") from e
        base_dir = self.base_dir or os.path.dirname(os.path.abspath(compose_path))
        name = os.path.basename(base_dir) or "default"
        return self._parse(content, base_dir, name)

    def parse_from_string(self, content: str) -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed configuration.
        """
        return self._parse(content, self.base_dir or ".", "default")

    def _parse(self, content: str, base_dir: str, name: str) -> OrchestrationConfig:
        content = EnvironmentInterpolator.interpolate(content, self.context)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ComposeError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ComposeError("A compose file must be a mapping")

        services_spec = data.get("services") or {}
        volumes_spec = data.get("volumes") or {}
        if not isinstance(services_spec, dict):
            raise ComposeError("services must be a mapping")
        if not isinstance(volumes_spec, (dict, list)):
            raise ComposeError("volumes must be a mapping")

        env_manager = EnvironmentManager(base_dir)
        services = {}
        for svc_name, spec in services_spec.items():
            try:
                services[svc_name] = self._parse_service(svc_name, spec or {}, env_manager)
            except (ValidationError, ValueError, TypeError, AttributeError, KeyError) as e:
                raise ComposeError(f"Invalid service {svc_name}: {e}") from e

        try:
            settings = ControllerSettings().with_overrides(**self._settings(data.get(SETTINGS_KEY)))
        except (ValidationError, ValueError) as e:
            raise ComposeError(f"Invalid {SETTINGS_KEY} block: {e}") from e

        return OrchestrationConfig(
            name=str(data.get("name") or name),
            services=services,
            volumes=[str(v) for v in volumes_spec],
            settings=settings,
        )

    def _parse_service(self,
                       name: str,
                       spec: Dict[str, Any],
                       env_manager: EnvironmentManager) -> Service:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param env_manager: Resolves env files relative to the project.
        :return: A Service instance.
        """
        if not isinstance(spec, dict):
            raise ComposeError(f"Service {name} must be a mapping")
        if "links" in spec:
            logger.debug("Ignoring links of %s; depends_on is the dependency relation", name)

        env_files = self._env_files(spec.get("env_file"))
        required = self._to_list(spec.get(REQUIRED_ENV_KEY))
        environment = env_manager.get_merged_environment(
            name,
            self._environment(spec.get("environment")),
            env_files,
            required,
        )

        depends_on = spec.get("depends_on") or []
        if isinstance(depends_on, dict):
            depends_on = list(depends_on.keys())

        return Service(
            name=name,
            image=spec.get("image", ""),
            container_name=spec.get("container_name"),
            command=self._command(spec.get("command")),
            working_dir=spec.get("working_dir"),
            environment=environment,
            env_files=env_files,
            required_env=required,
            ports=[port for item in spec.get("ports") or [] for port in self._ports(item)],
            volumes=[self._volume(item) for item in spec.get("volumes") or []],
            depends_on=depends_on,
            healthcheck=self._healthcheck(spec.get("healthcheck")),
        )

    def _environment(self, env_spec: Any) -> Dict[str, str]:
        """
        Accepts the list form (``KEY=VALUE`` or bare ``KEY``, taken from the
        interpolation context) and the mapping form.
        """
        environment: Dict[str, str] = {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                if "=" in entry:
                    key, value = entry.split("=", 1)
                    environment[key] = value
                elif entry in self.context:
                    environment[entry] = self.context[entry]
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    if key in self.context:
                        environment[key] = self.context[key]
                elif isinstance(value, bool):
                    environment[key] = "true" if value else "false"
                else:
                    environment[key] = str(value)
        return environment

    def _env_files(self, value: Any) -> List[str]:
        files = []
        for entry in self._to_list(value):
            if isinstance(entry, dict):
                files.append(entry["path"])
            else:
                files.append(entry)
        return files

    def _ports(self, item: Any) -> List[PortMapping]:
        """
        Accepts ``8000``, ``"8000"``, ``"8000:80"``, ``"127.0.0.1:8000:80"``,
        ranges such as ``"9000-9001:80-81"``, a ``/udp`` suffix and the long
        mapping form.
        """
        if isinstance(item, dict):
            published = item.get("published")
            return [PortMapping(
                container=int(item["target"]),
                host=int(published) if published not in (None, "") else None,
                protocol=item.get("protocol", "tcp"),
            )]

        text = str(item)
        protocol = "tcp"
        if "/" in text:
            text, protocol = text.rsplit("/", 1)
        parts = text.split(":")
        if len(parts) == 3:
            parts = parts[1:]
        if len(parts) == 1:
            return [PortMapping(container=c, protocol=protocol) for c in self._port_range(parts[0])]
        if len(parts) != 2:
            raise ComposeError(f"Invalid port mapping: {item}")

        containers = self._port_range(parts[1])
        hosts = self._port_range(parts[0]) if parts[0] else [None] * len(containers)
        if len(hosts) != len(containers):
            raise ComposeError(f"Port ranges differ in length: {item}")
        return [PortMapping(container=c, host=h, protocol=protocol) for h, c in zip(hosts, containers)]

    @staticmethod
    def _port_range(text: str) -> List[int]:
        if "-" in text:
            start, end = (int(p) for p in text.split("-", 1))
            if end < start:
                raise ComposeError(f"Invalid port range: {text}")
            return list(range(start, end + 1))
        return [int(text)]

    @staticmethod
    def _volume(item: Any) -> VolumeMount:
        if isinstance(item, dict):
            return VolumeMount(
                source=item.get("source", ""),
                target=item["target"],
                read_only=bool(item.get("read_only", False)),
            )
        parts = str(item).split(":")
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == "ro"))
        raise ComposeError(f"Invalid volume mount: {item}")

    def _healthcheck(self, spec: Any) -> Optional[HealthCheck]:
        if not spec:
            return None
        if spec.get("disable"):
            return HealthCheck(test=["NONE"])
        test = spec.get("test")
        if test is None:
            return None
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        kwargs = {"test": list(test)}
        if "timeout" in spec:
            kwargs["timeout"] = parse_duration(spec["timeout"])
        return HealthCheck(**kwargs)

    @staticmethod
    def _command(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return shlex.split(value)
        return [str(v) for v in value]

    @staticmethod
    def _settings(block: Any) -> Dict[str, Any]:
        if not block:
            return {}
        if not isinstance(block, dict):
            raise ComposeError(f"{SETTINGS_KEY} must be a mapping")
        settings = dict(block)
        for key in ("base_delay", "max_delay", "stop_timeout", "kill_grace"):
            if key in settings:
                settings[key] = parse_duration(settings[key])
        return settings

    @staticmethod
    def _to_list(val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)
