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
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Mapping

from ..errors import InterpolationError

logger = logging.getLogger(__name__)

# $$ | $VAR | ${VAR} | ${VAR<op><arg>} with op one of :- - :+ + :? ?
_PATTERN = re.compile(
    r"\$(?:"
    r"(?P<escaped>\$)"
    r"|(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<arg>[^}]*))?\}"
    r")"
)


class EnvironmentInterpolator:
    """
    Compose-style variable substitution.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+alt},
    ${VAR+alt}, ${VAR:?message}, ${VAR?message} and $$ for a literal dollar.
    The colon forms treat an empty value like an unset one.
    """

    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        :param template: Text containing placeholders.
        :param context: Variables available for substitution.
        :return: The interpolated text. Unset plain variables become "".
        :raises InterpolationError: For a ``?`` form whose variable is missing.
        """

        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"
            name = match.group("bare") or match.group("braced")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = context.get(name)
            missing = value is None or (op is not None and op.startswith(":") and value == "")

            if op in (":-", "-"):
                return arg if missing else value
            if op in (":+", "+"):
                return "" if missing else arg
            if op in (":?", "?"):
                if missing:
                    raise InterpolationError(arg or f"Required variable {name} is not set")
                return value
            if value is None:
                logger.warning("Variable %s is not set, substituting an empty string", name)
                return ""
            return value

        return _PATTERN.sub(replace, template)
