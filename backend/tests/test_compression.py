from chatapp.utils.compression import (
    COMPRESSION_MARKER,
    COMPRESSION_THRESHOLD,
    compress,
    compression_ratio,
    decompress,
    is_compressed,
)


def test_short_content_is_stored_verbatim():
    text = 'hello ' * 10
    assert compress(text) == text
    assert not is_compressed(compress(text))


def test_content_at_threshold_is_compressed():
    text = 'a' * COMPRESSION_THRESHOLD
    packed = compress(text)
    assert packed.startswith(COMPRESSION_MARKER)
    assert len(packed) < len(text)
    assert decompress(packed) == text


def test_unicode_round_trip():
    text = '你好，世界 🌍 ' * 100
    assert decompress(compress(text)) == text


def test_untagged_content_passes_through():
    assert decompress('plain text') == 'plain text'
    assert decompress('') == ''
    assert decompress(None) is None


def test_corrupt_payload_never_raises():
    corrupt = COMPRESSION_MARKER + 'not-base64-!!!'
    assert decompress(corrupt) == corrupt

    valid_base64_bad_zlib = COMPRESSION_MARKER + 'aGVsbG8gd29ybGQ='
    assert decompress(valid_base64_bad_zlib) == valid_base64_bad_zlib


def test_compression_ratio():
    assert compression_ratio('short') == 1.0
    assert compression_ratio('') == 1.0
    assert compression_ratio('x' * 2000) < 0.2
