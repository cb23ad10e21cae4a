import pytest

from dockwright.UTILS.string_interpolation import EnvironmentInterpolator, extract_property_name


def test_interpolate():
    context = {"HOST": "db", "EMPTY": ""}
    assert EnvironmentInterpolator.interpolate("jdbc://${HOST}:5432", context) == "jdbc://db:5432"
    assert EnvironmentInterpolator.interpolate("${PORT:-5432}", context) == "5432"
    assert EnvironmentInterpolator.interpolate("${EMPTY:-fallback}", context) == "fallback"
    assert EnvironmentInterpolator.interpolate("${HOST:+set}", context) == "set"
    assert EnvironmentInterpolator.interpolate("${PORT:+set}", context) == ""


def test_strict_and_lenient():
    with pytest.raises(KeyError):
        EnvironmentInterpolator.interpolate("${db.port}", {})
    assert EnvironmentInterpolator.interpolate("${db.port}:5432", {}, strict=False) == "${db.port}:5432"


def test_extract_property_name():
    assert extract_property_name("${web.port}") == "web.port"
    assert extract_property_name("web.port") is None
    assert extract_property_name("x${web.port}") is None
