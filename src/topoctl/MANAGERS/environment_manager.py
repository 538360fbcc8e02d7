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
Resolution of a service's environment from env files and inline variables.
"""
import logging
import os
from typing import Dict, Iterable, List, Mapping

from dotenv import dotenv_values

from ..errors import ConfigurationError, MissingEnvironment

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Merges ``env_file`` entries and inline ``environment`` into the mapping a
    service is started with. The result is treated as opaque key/value data;
    the only check applied is that required keys are present.
    """

    def __init__(self, base_dir: str = "."):
        """
        :param base_dir: The base directory for resolving relative paths to env files.
        """
        self.base_dir = base_dir

    def load_file(self, env_file: str) -> Dict[str, str]:
        """
        Reads one env file. Keys declared without a value resolve to "".

        :raises ConfigurationError: If the file does not exist.
        """
        path = os.path.join(self.base_dir, env_file)
        if not os.path.isfile(path):
            raise ConfigurationError(f"Env file {env_file} not found (looked in {path})")
        values = dotenv_values(path)
        return {key: "" if value is None else value for key, value in values.items()}

    def get_merged_environment(self,
                               service: str,
                               explicit_env: Mapping[str, str],
                               env_files: Iterable[str],
                               required: Iterable[str] = ()) -> Dict[str, str]:
        """
        Later files override earlier ones; inline variables override all files.

        :param service: Service name, for error reporting.
        :param explicit_env: Inline variables.
        :param env_files: Env file paths relative to ``base_dir``.
        :param required: Keys that must be present in the result.
        :raises MissingEnvironment: If a required key is absent.
        """
        merged: Dict[str, str] = {}
        for env_file in env_files:
            file_env = self.load_file(env_file)
            logger.debug("Loaded %d variables for %s from %s", len(file_env), service, env_file)
            merged.update(file_env)
        merged.update({key: str(value) for key, value in explicit_env.items()})

        self.require(service, merged, required)
        return merged

    @staticmethod
    def require(service: str, env: Mapping[str, str], required: Iterable[str]) -> None:
        missing: List[str] = [key for key in required if key not in env]
        if missing:
            raise MissingEnvironment(service, missing)
