"""config.py - Which methods are eligible for hooking.

A configuration is a list of packages. Each package is a filesystem path
prefix (a directory or a single file) plus a list of exclusion patterns. A
method is eligible iff its source file lies under some package path and none
of that package's patterns match it.

Exclusion patterns are ``fnmatch`` globs matched against the class name,
against ``Class.method`` and, for instance methods, against
``Class#method``::

    exclude:
      - myapp.legacy.*        # every class in a module (module functions too)
      - Cache                 # a whole class
      - Cache.clear           # one method, instance or static
      - Cache#get             # one instance method

The configuration also carries ``filter_parameters``: parameter-name patterns
whose values are redacted by the HTTP adapter before capture.

Typical file (``callmap.yml``)::

    name: myapp
    packages:
      - path: src/myapp
        exclude: [myapp.vendor.*]
    filter_parameters: [password, token]
"""

import os
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_ENV_VAR = "CALLMAP_CONFIG"
DEFAULT_CONFIG_FILE = "callmap.yml"

DEFAULT_FILTER_PARAMETERS = ["passw", "secret", "token", "_key", "crypt", "salt", "otp"]


class Package(BaseModel):
    """A source path prefix whose methods are hooked."""

    path: str
    exclude: List[str] = Field(default_factory=list)

    @property
    def abspath(self) -> str:
        return os.path.abspath(self.path)

    def covers(self, source_path: str) -> bool:
        """Return True if ``source_path`` is the package path or lies under it."""
        root = self.abspath
        candidate = os.path.abspath(source_path)
        return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)

    def excludes(self, defined_class: str, method_id: str, is_static: bool = False) -> bool:
        """Return True if an exclusion pattern matches the method."""
        names = [defined_class, f"{defined_class}.{method_id}"]
        if not is_static:
            names.append(f"{defined_class}#{method_id}")
        return any(fnmatchcase(name, pattern) for pattern in self.exclude for name in names)


class Config(BaseModel):
    """Hooking configuration: packages to instrument and parameters to redact."""

    name: str = "callmap"
    packages: List[Package] = Field(default_factory=list)
    filter_parameters: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FILTER_PARAMETERS)
    )

    def package_for(self, source_path: Optional[str]) -> Optional[Package]:
        """Return the first package covering ``source_path``, or None."""
        if not source_path:
            return None
        for package in self.packages:
            if package.covers(source_path):
                return package
        return None

    def eligible(
        self, defined_class: str, method_id: str, source_path: Optional[str], is_static: bool
    ) -> bool:
        """Return True if the configuration selects this method for hooking.

        Built-in exclusions (constructors, accessors) are applied separately
        by the hook, see ``callmap.exclusions``.
        """
        package = self.package_for(source_path)
        if package is None:
            return False
        return not package.excludes(defined_class, method_id, is_static)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Config":
        """Build a Config from parsed data.

        Raises:
            pydantic.ValidationError: If the data does not describe a config.
        """
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """Load a Config from a YAML file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(yaml.safe_load(f))

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load the Config named by ``path``, ``$CALLMAP_CONFIG`` or ``callmap.yml``.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
        return cls.from_yaml(path)
