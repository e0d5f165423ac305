import pytest

from groundlink.transport.tcp.socket import decode_line, encode_line


class TestDecodeLine:
    def test_decodes_object(self):
        assert decode_line(b'{"id": "1"}\n') == {"id": "1"}

    def test_decodes_multibyte_characters(self):
        assert decode_line('{"name": "Drón"}\n'.encode("utf-8")) == {"name": "Drón"}

    @pytest.mark.parametrize(
        "line", [b"", b"   \n", b"not json\n", b"[1, 2]\n", b'"text"\n']
    )
    def test_rejects_non_objects(self, line):
        assert decode_line(line) is None


class TestEncodeLine:
    def test_encodes_to_single_terminated_line(self):
        # Act
        line = encode_line({"body": {"text": "a\nb", "name": "Drón"}})

        # Assert
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert decode_line(line) == {"body": {"text": "a\nb", "name": "Drón"}}

    def test_unserializable_raises_value_error(self):
        with pytest.raises(ValueError):
            encode_line({"value": object()})
