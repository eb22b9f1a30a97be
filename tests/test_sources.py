import hashlib

import pytest

from buildyard.errors import ConfigError
from buildyard.model import PackageSource
from buildyard.sources import SourceCache, file_digest

from conftest import make_catalog, pkg

DATA = b"zlib source tarball"


def put_source(config, name="zlib", version="1.0", source="src", data=DATA, hash_type="sha256"):
    digest = hashlib.new(hash_type, data).hexdigest()
    path = config.source_cache / f"{name}-{version}" / f"{source}-{digest}.source"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return digest


def with_source(name, digest, hash_type="sha256", **kwargs):
    return pkg(name, sources={"src": {"url": f"https://example.org/{name}.tar.gz",
                                      "hash": {"type": hash_type, "hash": digest}}}, **kwargs)


def test_file_digest(tmp_path):
    p = tmp_path / "f"
    p.write_bytes(DATA)
    for hash_type in ("sha1", "sha256", "sha512"):
        assert file_digest(p, hash_type) == hashlib.new(hash_type, DATA).hexdigest()


def test_verify_good_source(config):
    digest = put_source(config, hash_type="sha512")
    (zlib,) = make_catalog(config, with_source("zlib", digest, "sha512"))
    cache = SourceCache.from_config(config)

    assert cache.verify(zlib, zlib.sources[0]) == cache.path_of(zlib, zlib.sources[0])
    assert cache.verify_all([zlib]) == 1


def test_missing_source(config):
    (zlib,) = make_catalog(config, with_source("zlib", "00" * 32))
    with pytest.raises(ConfigError) as e:
        SourceCache.from_config(config).verify(zlib, zlib.sources[0])
    assert e.value.kind == "source_missing"
    assert "zlib.tar.gz" in e.value.details["hint"]


def test_hash_mismatch(config):
    digest = put_source(config)
    (zlib,) = make_catalog(config, with_source("zlib", digest))
    source = zlib.sources[0]
    SourceCache.from_config(config).path_of(zlib, source).write_bytes(b"tampered")

    with pytest.raises(ConfigError) as e:
        SourceCache.from_config(config).verify(zlib, source)
    assert e.value.kind == "source_hash_mismatch"
    assert e.value.message == (
        f"Hash mismatch, expected '{digest}', got '{hashlib.sha256(b'tampered').hexdigest()}'"
    )


def test_verify_all_reports_every_failure(config):
    good = put_source(config, name="good")
    catalog = make_catalog(config, with_source("good", good), with_source("a", "11" * 32), with_source("b", "22" * 32))

    with pytest.raises(ConfigError) as e:
        SourceCache.from_config(config).verify_all(catalog)
    assert e.value.kind == "source_verification_failed"
    assert sorted(e.value.details) == ["a 1.0/src", "b 1.0/src"]


def test_source_file_name():
    s = PackageSource(name="src", url="https://x", hash_type="sha1", hash="abc")
    assert s.file_name == "src-abc.source"
