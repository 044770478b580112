import pytest

from multiverso.cl_parser import CommandLineParser


def test_key_value_pairs():
    parser = CommandLineParser(["-serverid", "3", "-workers", "2"])
    assert parser.get_value("-serverid", int) == 3
    assert parser.get_value("-workers", int) == 2


def test_flag_without_value():
    parser = CommandLineParser(["-help", "-endpoint", "host:1"])
    assert parser.has_key("-help") is True
    assert parser.get_value("-help") == ""
    assert parser.get_value("-endpoint") == "host:1"


def test_trailing_flag():
    parser = CommandLineParser(["-logfile", "x.log", "-verbose"])
    assert parser.has_key("-verbose") is True
    assert parser.get_value("-verbose") == ""


def test_stray_values_ignored():
    parser = CommandLineParser(["stray", "-a", "1", "extra"])
    assert parser.has_key("stray") is False
    assert parser.has_key("extra") is False
    assert parser.get_value("-a", int) == 1


def test_last_occurrence_wins():
    parser = CommandLineParser(["-id", "1", "-id", "2"])
    assert parser.get_value("-id", int) == 2


def test_value_read_as_first_token():
    parser = CommandLineParser(["-name", "alpha beta"])
    assert parser.get_value("-name") == "alpha"


def test_keys_are_case_sensitive():
    parser = CommandLineParser(["-Config", "a"])
    assert parser.has_key("-config") is False


def test_missing_key():
    with pytest.raises(KeyError):
        CommandLineParser([]).get_value("-serverid", int)


def test_bad_conversion():
    with pytest.raises(ValueError):
        CommandLineParser(["-workers", "many"]).get_value("-workers", int)