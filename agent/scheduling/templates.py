"""
Protocol template loading and lookup

Templates are authored as YAML files (one protocol per file) and seeded into
the record store. The engine only reads them through TemplateRepository.
"""
import logging
from pathlib import Path
from typing import List, Union

import yaml

from .exceptions import InvalidTemplate
from .models import ProtocolTemplate
from .recovery import recovery_phase

logger = logging.getLogger("protocol-templates")


def build_template(data: dict) -> ProtocolTemplate:
    """
    Validate raw template data and fill in derived fields.

    Tasks without an explicit phase get the recovery phase of their day offset.
    """
    if not isinstance(data, dict):
        raise InvalidTemplate(f"Protocol template must be a mapping, got {type(data).__name__}")

    template = ProtocolTemplate.from_dict(data)
    for task in template.tasks:
        if task.phase is None:
            task.phase = recovery_phase(task.day_offset)
    return template


def load_template_file(path: Union[str, Path]) -> ProtocolTemplate:
    """
    Load one protocol template from a YAML file

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidTemplate: If the YAML is unreadable or the template is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Template file {path} does not exist.")

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse template file {path}: {e}")
            raise InvalidTemplate(f"Template file {path} is not valid YAML: {e}") from e

    template = build_template(data)
    logger.info(f"Loaded protocol template {template.id} ({len(template.tasks)} tasks) from {path.name}")
    return template


def load_templates_dir(directory: Union[str, Path]) -> List[ProtocolTemplate]:
    """Load every *.yaml / *.yml template in a directory, sorted by file name"""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Template directory {directory} does not exist.")

    files = sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml")))
    return [load_template_file(path) for path in files]


class TemplateRepository:
    """
    Read-only view of protocol templates backed by a ProtocolStore
    """

    def __init__(self, store):
        self.store = store

    def fetch(self, protocol_id: str) -> ProtocolTemplate:
        """Get a template; raises TemplateNotFound if it does not exist"""
        return self.store.fetch_template(protocol_id)

    def list(self) -> List[ProtocolTemplate]:
        return self.store.list_templates()

    def seed(self, templates: List[ProtocolTemplate]) -> List[ProtocolTemplate]:
        """Save templates into the store, returning them with their new versions"""
        saved = [self.store.save_template(template) for template in templates]
        logger.info(f"Seeded {len(saved)} protocol templates")
        return saved

    def seed_from_dir(self, directory: Union[str, Path]) -> List[ProtocolTemplate]:
        return self.seed(load_templates_dir(directory))
