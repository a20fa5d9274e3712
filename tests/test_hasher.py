from docrag.services.rag.hasher import ContentHasher
from docrag.services.rag.types import Source

SOURCE = Source(source_id="abc", origin="doc.txt", kind="text", modified_at=100.0)


def test_fingerprint_is_deterministic() -> None:
    hasher = ContentHasher(chunking_signature="chars:100:overlap:0.1000")

    assert hasher.fingerprint(SOURCE, b"hello") == hasher.fingerprint(SOURCE, b"hello")


def test_single_byte_change_changes_fingerprint() -> None:
    hasher = ContentHasher()
    content = bytearray(b"predictive maintenance manual")
    original = hasher.fingerprint(SOURCE, bytes(content))

    content[5] ^= 0x01

    assert hasher.fingerprint(SOURCE, bytes(content)) != original


def test_chunking_signature_is_part_of_fingerprint() -> None:
    small = ContentHasher(chunking_signature="chars:100:overlap:0.1000")
    large = ContentHasher(chunking_signature="chars:200:overlap:0.1000")

    assert small.fingerprint(SOURCE, b"same") != large.fingerprint(SOURCE, b"same")


def test_mtime_only_counts_when_enabled() -> None:
    touched = Source(source_id="abc", origin="doc.txt", kind="text", modified_at=200.0)

    assert ContentHasher().fingerprint(SOURCE, b"x") == ContentHasher().fingerprint(touched, b"x")

    with_mtime = ContentHasher(include_mtime=True)
    assert with_mtime.fingerprint(SOURCE, b"x") != with_mtime.fingerprint(touched, b"x")


def test_framing_keeps_fields_apart() -> None:
    hasher = ContentHasher(chunking_signature="b")
    other = ContentHasher(chunking_signature="")

    assert hasher.fingerprint(SOURCE, b"a") != other.fingerprint(SOURCE, b"ab")


def test_embedding_model_is_part_of_fingerprint() -> None:
    nomic = ContentHasher(embedding_model="nomic-embed-text")
    minilm = ContentHasher(embedding_model="all-minilm")

    assert nomic.fingerprint(SOURCE, b"same") != minilm.fingerprint(SOURCE, b"same")
