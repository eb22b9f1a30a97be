import pytest

from buildyard.catalog import PackageCatalog, parse_dependency
from buildyard.errors import ConfigError, GraphError
from buildyard.model import Dependency, PackageId

from conftest import make_catalog, pkg


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_load_layered_repository(tmp_path, config):
    root = tmp_path / "pkgs"
    _write(root / "pkg.toml", 'image = "debian"\nphases = ["build"]\n[environment]\nX = "1"\n')
    _write(root / "zlib" / "pkg.toml", 'name = "zlib"\nversion = "1.3"\nscript = "make"\n')
    _write(root / "curl" / "build.sh", "make curl\n")
    _write(
        root / "curl" / "pkg.toml",
        'name = "curl"\nversion = "8.0"\nscript_file = "build.sh"\ndependencies = ["zlib 1.3"]\n',
    )

    catalog = PackageCatalog.load(root, config.phase_vocabulary)

    assert [str(s.id) for s in catalog] == ["curl 8.0", "zlib 1.3"]
    curl = catalog.find("curl", "8.0")
    assert curl.script == "make curl\n"
    assert curl.image == "debian"
    assert curl.phases == ("build",)
    assert curl.environment == {"X": "1"}
    assert curl.dependencies == (Dependency("zlib", "1.3"),)
    assert PackageId("zlib", "1.3") in catalog


def test_default_phases_are_the_whole_vocabulary(config):
    catalog = make_catalog(config, pkg("a"))
    assert catalog.find("a", "1.0").phases == ("sourcecheck", "build")


def test_phase_out_of_vocabulary_order(config):
    with pytest.raises(ConfigError) as e:
        make_catalog(config, pkg("a", phases=["build", "sourcecheck"]))
    assert e.value.kind == "phase_order"


def test_unknown_phase(config):
    with pytest.raises(ConfigError) as e:
        make_catalog(config, pkg("a", phases=["deploy"]))
    assert e.value.kind == "unknown_phase"


def test_unknown_keys_and_missing_fields(config):
    with pytest.raises(ConfigError, match="unknown keys"):
        make_catalog(config, pkg("a", colour="red"))
    with pytest.raises(ConfigError, match="missing 'image'"):
        make_catalog(config, pkg("a", image=""))


def test_duplicate_package(config):
    with pytest.raises(GraphError) as e:
        make_catalog(config, pkg("a"), pkg("a"))
    assert e.value.kind == GraphError.DUPLICATE_PACKAGE


def test_find_by_name_sorted_by_version(config):
    catalog = make_catalog(config, pkg("a", version="2"), pkg("a", version="1"))
    assert [s.version for s in catalog.find_by_name("a")] == ["1", "2"]
    assert catalog.find_by_name("b") == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("zlib", Dependency("zlib")),
        ("zlib 1.3", Dependency("zlib", "1.3")),
        ({"name": "zlib", "version": "1.3"}, Dependency("zlib", "1.3")),
    ],
)
def test_parse_dependency(raw, expected):
    assert parse_dependency(raw) == expected


def test_parse_dependency_rejects_garbage():
    with pytest.raises(ConfigError):
        parse_dependency("a b c")
    with pytest.raises(ConfigError):
        parse_dependency(42)


def test_sources_table(tmp_path, config):
    root = tmp_path / "pkgs"
    _write(
        root / "zlib" / "pkg.toml",
        'name = "zlib"\nversion = "1.3"\nimage = "debian"\nscript = "make"\n'
        '[sources.src]\nurl = "https://zlib.net/zlib-1.3.tar.gz"\n'
        'hash = { type = "SHA256", hash = "ABCD" }\n'
        '[sources.patch]\nurl = "https://example.org/fix.patch"\ndownload_manually = true\n'
        'hash = { type = "sha1", hash = "0123" }\n',
    )

    (zlib,) = PackageCatalog.load(root, config.phase_vocabulary)

    assert [(s.name, s.hash_type, s.hash, s.download_manually) for s in zlib.sources] == [
        ("patch", "sha1", "0123", True),
        ("src", "sha256", "abcd", False),
    ]
    assert zlib.sources[1].file_name == "src-abcd.source"


@pytest.mark.parametrize("sources", [
    {"src": {"url": "https://x", "hash": {"type": "md5", "hash": "00"}}},
    {"src": {"hash": {"type": "sha256", "hash": "00"}}},
    {"src": {"url": "https://x"}},
    ["https://x"],
])
def test_invalid_sources(config, sources):
    with pytest.raises(ConfigError) as e:
        make_catalog(config, pkg("a", sources=sources))
    assert e.value.kind == "invalid_package"
