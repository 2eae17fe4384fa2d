import pytest

from huddle.core import errors


@pytest.mark.parametrize("cls", errors.RelayError.__subclasses__())
def test_every_relay_error_has_a_listed_code(cls):
    assert cls.code in errors.ERROR_CODES


def test_codes_are_unique():
    codes = [cls.code for cls in errors.RelayError.__subclasses__()]
    assert len(codes) == len(set(codes)) == len(errors.ERROR_CODES)


def test_detail_is_kept():
    exc = errors.NotJoined("not in a room")
    assert exc.detail == "not in a room"
    assert str(exc) == "not in a room"
