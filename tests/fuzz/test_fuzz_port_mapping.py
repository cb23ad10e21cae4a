import random
import string

import pytest

from dockwright.PARSERS.config_parser import ConfigParser
from dockwright.UTILS.port_mapping import PortMapping
from dockwright.exceptions import ConfigurationError, DockwrightError

PORT_ALPHABET = string.digits + "abc/${}.-_ "


def random_string(alphabet, length):
    return ''.join(random.choice(alphabet) for _ in range(length))


def random_port_spec():
    # At most one colon, a bind host would be looked up via DNS
    spec = random_string(PORT_ALPHABET, random.randint(0, 12))
    if random.random() < 0.5:
        spec += ":" + random_string(PORT_ALPHABET, random.randint(0, 6))
    return spec


def test_fuzz_port_mapping():
    random.seed(4711)
    for _ in range(500):
        specs = [random_port_spec() for _ in range(random.randint(1, 4))]
        properties = {}
        try:
            mapping = PortMapping(specs, properties)
        except DockwrightError:
            continue
        # Whatever parsed must produce a consistent create request
        bindings = mapping.to_bindings_document()
        assert set(bindings) <= set(mapping.container_ports)


def test_fuzz_config_parser():
    random.seed(815)
    parser = ConfigParser(context={})
    for _ in range(200):
        content = random_string(string.printable, random.randint(0, 300))
        try:
            parser.parse_from_string(content)
        except ConfigurationError:
            pass


@pytest.mark.parametrize("content", [
    "images:\n  - name: x\n    run: {cmd: \"echo 'unterminated\"}",
    "images:\n  - name: x\n    run: {ports: [{a: 1}]}",
    "images: [1, 2]",
    "project: 5",
    "properties: [a, b]",
])
def test_malformed_documents_raise_configuration_error(content):
    with pytest.raises(ConfigurationError):
        ConfigParser(context={}).parse_from_string(content)
