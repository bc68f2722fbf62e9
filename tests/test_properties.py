import pytest

from ezhost.core.errors import InvalidRequest, NotFound
from ezhost.services import properties


def test_parse_skips_comments_and_keeps_empty_values():
    text = (
        "#Minecraft server properties\n"
        "#Sat Oct 18 12:00:00 CEST 2026\n"
        "motd=A Minecraft Server\n"
        "level-seed=\n"
        "\n"
        "generator-settings={\"a\"\\=1}\n"
    )
    props = properties.parse_properties(text)

    assert props == {
        "motd": "A Minecraft Server",
        "level-seed": "",
        "generator-settings": "{\"a\"\\=1}",
    }


def test_write_merges_onto_existing_keys(tmp_path):
    path = tmp_path / "server.properties"
    path.write_text("#comment\na=0\nb=2\n", encoding="utf-8")

    merged = properties.write_properties(path, {"a": "1"})

    assert merged == {"a": "1", "b": "2"}
    assert properties.read_properties(path) == {"a": "1", "b": "2"}
    assert "#comment" not in path.read_text(encoding="utf-8")


def test_write_normalizes_values(tmp_path):
    path = tmp_path / "server.properties"

    properties.write_properties(path, {"pvp": False, "max-players": 20, "motd": None})

    assert properties.read_properties(path) == {"pvp": "false", "max-players": "20", "motd": ""}


@pytest.mark.parametrize("updates", [{"bad=key": "1"}, {"motd": "two\nlines"}, {"": "x"}])
def test_write_rejects_malformed_entries(tmp_path, updates):
    path = tmp_path / "server.properties"
    path.write_text("a=0\n", encoding="utf-8")

    with pytest.raises(InvalidRequest):
        properties.write_properties(path, updates)
    assert path.read_text(encoding="utf-8") == "a=0\n"


def test_read_missing_properties_is_not_found(tmp_path):
    with pytest.raises(NotFound):
        properties.read_properties(tmp_path / "server.properties")


def test_enable_rcon_creates_missing_file(tmp_path):
    properties.enable_rcon(tmp_path, "hunter2")

    props = properties.read_properties(tmp_path / "server.properties")
    assert props["enable-rcon"] == "true"
    assert props["rcon.port"] == "25575"
    assert props["rcon.password"] == "hunter2"
    assert props["server-port"] == "25565"
    assert props["max-players"] == "20"


def test_enable_rcon_keeps_other_settings(tmp_path):
    (tmp_path / "server.properties").write_text("enable-rcon=false\nserver-port=25570\n", encoding="utf-8")

    properties.enable_rcon(tmp_path, "pw")

    props = properties.read_properties(tmp_path / "server.properties")
    assert props["enable-rcon"] == "true"
    assert props["server-port"] == "25570"
    assert "motd" not in props


def test_ram_round_trip_over_allowed_range(tmp_path):
    path = tmp_path / "variables.txt"
    path.write_text("-Xmx4G -Xms1G -XX:+UseG1GC\n", encoding="utf-8")

    for ram in range(4, 17):
        properties.write_ram(path, ram)
        assert properties.read_ram(path) == ram

    assert path.read_text(encoding="utf-8") == "-Xmx16G -Xms1G -XX:+UseG1GC\n"


def test_write_ram_adds_flag_when_absent(tmp_path):
    path = tmp_path / "variables.txt"
    path.write_text("-Xms1G\n", encoding="utf-8")

    properties.write_ram(path, 8)

    assert path.read_text(encoding="utf-8") == "-Xmx8G -Xms1G\n"


@pytest.mark.parametrize("ram", [3, 17, "lots", 6.5, True, None])
def test_write_ram_rejects_out_of_range(tmp_path, ram):
    path = tmp_path / "variables.txt"
    path.write_text("-Xmx4G\n", encoding="utf-8")

    with pytest.raises(InvalidRequest):
        properties.write_ram(path, ram)
    assert properties.read_ram(path) == 4


def test_write_ram_accepts_numeric_string(tmp_path):
    path = tmp_path / "variables.txt"
    path.write_text("-Xmx4G\n", encoding="utf-8")

    assert properties.write_ram(path, "12") == 12
    assert properties.read_ram(path) == 12


def test_write_ram_requires_variables_file(tmp_path):
    with pytest.raises(NotFound):
        properties.write_ram(tmp_path / "variables.txt", 8)


def test_read_ram_defaults_to_four(tmp_path):
    assert properties.read_ram(tmp_path / "missing.txt") == 4

    path = tmp_path / "variables.txt"
    path.write_text("-Xms2G\n", encoding="utf-8")
    assert properties.read_ram(path) == 4
