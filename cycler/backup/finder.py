"""
Trigger lookup in a models configuration file.

The configuration file is a Python file defining MODELS, a list of
BackupModel instances.
"""

import os
import re
import runpy
from typing import List

from .executor import BackupModel


# Can be used alone or in a mask (e.g. web_*)
WILDCARD = '*'


class FinderError(Exception):
    """Raised when a trigger cannot be resolved."""
    pass


class MissingConfigError(FinderError):
    pass


class MissingTriggerError(FinderError):
    pass


class Finder:
    """Resolves triggers against the models of a configuration file."""

    def __init__(self, trigger: str, config_file: str):
        self.trigger = trigger
        self.config_file = config_file

    def load_models(self) -> List[BackupModel]:
        """
        Execute the configuration file and return its MODELS.

        Raises:
            MissingConfigError: If the file does not exist
        """
        if not os.path.exists(self.config_file):
            raise MissingConfigError(f"Could not find configuration file: '{self.config_file}'.")

        namespace = runpy.run_path(self.config_file)
        models = namespace.get('MODELS', [])

        invalid = [model for model in models if not isinstance(model, BackupModel)]
        if invalid:
            raise FinderError(f"MODELS in '{self.config_file}' contains non-model entries: {invalid}")
        return list(models)

    def find(self) -> BackupModel:
        """
        Return the model whose trigger matches exactly.

        Raises:
            MissingTriggerError: If no model has the trigger
        """
        for model in self.load_models():
            if model.trigger == self.trigger:
                return model

        raise MissingTriggerError(f"Could not find trigger '{self.trigger}' in '{self.config_file}'.")

    def matching(self) -> List[BackupModel]:
        """Return every model whose trigger matches the wildcard mask."""
        parts = [re.escape(part) for part in self.trigger.split(WILDCARD)]
        pattern = re.compile('^' + '(.+)'.join(parts) + '$')
        return [model for model in self.load_models() if pattern.match(model.trigger)]
