"""Tests para verificar la salud de los imports del proyecto."""

import ast
import sys
from pathlib import Path

import pytest

# Agregar el directorio raíz al path para imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

SOURCE_PACKAGES = ("adapters", "infrastructure", "modules", "services")


def iter_source_files():
    for package in SOURCE_PACKAGES:
        yield from sorted((project_root / package).rglob("*.py"))


class TestImportHealth:
    """Tests para verificar que no hay problemas con los imports."""

    def test_services_import(self):
        """Verifica que el servicio principal se puede importar sin error."""
        try:
            from services.mqtt_service import MQTTService
        except ImportError as e:
            pytest.fail(f"Error importando servicios principales: {e}")

    def test_modules_import(self):
        """Verifica que los módulos principales se pueden importar sin error."""
        import modules.rtl433_mqtt

        assert modules.rtl433_mqtt.__version__
        for name in modules.rtl433_mqtt.__all__:
            assert hasattr(modules.rtl433_mqtt, name)

    def test_adapters_import(self):
        """Verifica que los adaptadores se pueden importar sin error."""
        try:
            from adapters.interfaces import BaseService, MQTTTransport, ServiceStatus
            from infrastructure.paho_transport import PahoTransport
        except ImportError as e:
            pytest.fail(f"Error importando interfaces de adaptadores: {e}")

    def test_no_relative_imports(self):
        """Verifica que no hay imports relativos en el proyecto."""
        problematic_files = []
        for path in iter_source_files():
            # Permitidos en __init__.py
            if path.name == "__init__.py":
                continue
            tree = ast.parse(path.read_text(encoding="utf-8"))
            if any(isinstance(node, ast.ImportFrom) and node.level > 0 for node in ast.walk(tree)):
                problematic_files.append(str(path.relative_to(project_root)))

        assert problematic_files == [], f"Se encontraron imports relativos en: {problematic_files}"
