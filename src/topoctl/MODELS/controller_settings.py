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
Tunables for the lifecycle controller.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, model_validator


class RetryPolicy(BaseModel):
    """
    Readiness probing with exponential backoff.
    The n-th retry waits ``base_delay * 2**(n-1)`` seconds, capped at ``max_delay``.
    """
    max_retries: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self


class ControllerSettings(BaseModel):
    """
    Settings for a controller run, read from the ``x-topoctl`` block of a
    compose file and overridable from the command line.
    """
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    stop_timeout: float = Field(default=10.0, ge=0)
    # Extra time granted to a forced kill before the service is marked stopped anyway.
    kill_grace: float = Field(default=2.0, ge=0)

    def with_overrides(self, **overrides: Optional[Any]) -> "ControllerSettings":
        """
        Applies non-None overrides. Retry fields may be given flat
        (``max_retries=3``) or the settings fields directly.
        """
        retry_fields = set(RetryPolicy.model_fields)
        retry: Dict[str, Any] = {}
        top: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in retry_fields:
                retry[key] = value
            else:
                top[key] = value
        data = self.model_dump()
        data["retry"].update(retry)
        data.update(top)
        return ControllerSettings.model_validate(data)
