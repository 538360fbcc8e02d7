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
Readiness probing with exponential backoff.
"""
import logging
import threading
from typing import Any, Callable, Optional

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from ..MODELS.controller_settings import RetryPolicy
from ..RUNNERS.container_runtime import ContainerRuntime, ProbeResult
from ..errors import ProbeTimeout, StartCancelled

logger = logging.getLogger(__name__)


class ReadinessProber:
    """
    Polls a runtime's readiness probe until it reports ready or the retry
    budget is spent. Backoff sleeps wake up early when ``cancelled`` is set.
    """

    def __init__(self,
                 runtime: ContainerRuntime,
                 policy: RetryPolicy,
                 cancelled: Optional[threading.Event] = None):
        self.runtime = runtime
        self.policy = policy
        self.cancelled = cancelled or threading.Event()

    def wait_ready(self,
                   service: str,
                   handle: Any,
                   on_attempt: Optional[Callable[[int, ProbeResult], None]] = None) -> ProbeResult:
        """
        Probes ``handle`` up to ``max_retries`` times.

        :param service: Service name, for logging and errors.
        :param handle: Runtime handle returned by ``start``.
        :param on_attempt: Called with (attempt number, result) after every probe.
        :return: The successful probe result.
        :raises ProbeTimeout: If no probe succeeded.
        :raises StartCancelled: If cancellation was requested while waiting.
        """
        last: ProbeResult = ProbeResult.not_ready()
        attempts = 0

        def probe_once() -> ProbeResult:
            nonlocal last, attempts
            if self.cancelled.is_set():
                raise StartCancelled(service)
            attempts += 1
            try:
                last = self.runtime.probe(handle)
            except Exception as e:
                last = ProbeResult.errored(f"{type(e).__name__}: {e}")
            if on_attempt:
                on_attempt(attempts, last)
            if not last.ready:
                logger.debug("[%s] probe %d/%d: %s %s", service, attempts,
                             self.policy.max_retries, last.status.value, last.output)
            return last

        def log_sleep(retry_state: RetryCallState) -> None:
            logger.info("[%s] not ready yet, retrying in %.2fs", service,
                        retry_state.next_action.sleep)

        retrying = Retrying(
            stop=stop_after_attempt(self.policy.max_retries),
            wait=wait_exponential(multiplier=self.policy.base_delay, max=self.policy.max_delay),
            retry=retry_if_result(lambda result: not result.ready),
            before_sleep=log_sleep,
            sleep=self._sleep(service),
        )
        try:
            return retrying(probe_once)
        except RetryError:
            raise ProbeTimeout(service, self.policy.max_retries, last.output or last.status.value)

    def _sleep(self, service: str) -> Callable[[float], None]:
        def sleep(seconds: float) -> None:
            if self.cancelled.wait(seconds):
                raise StartCancelled(service)
        return sleep
