import io

import pytest

from distlab import labgob
from distlab.kvrpc import Err, GetArgs, GetReply, PutArgs, PutReply


def _round_trip(value, target):
    buf = io.BytesIO()
    labgob.LabEncoder(buf).encode(value)
    return labgob.LabDecoder(io.BytesIO(buf.getvalue())).decode(target)


@pytest.mark.parametrize(
    "member, text",
    [
        (Err.OK, "OK"),
        (Err.ERR_NO_KEY, "ErrNoKey"),
        (Err.ERR_VERSION, "ErrVersion"),
        (Err.ERR_MAYBE, "ErrMaybe"),
        (Err.ERR_WRONG_LEADER, "ErrWrongLeader"),
        (Err.ERR_WRONG_GROUP, "ErrWrongGroup"),
    ],
)
def test_err_values_match_wire_strings(member, text):
    assert member == text
    assert str(member) == text
    assert Err(text) is member


def test_unknown_err_is_rejected():
    with pytest.raises(ValueError):
        Err("ErrBogus")


def test_put_args_defaults_are_zero():
    args = PutArgs()
    assert (args.key, args.value, args.version) == ("", "", 0)


def test_replies_start_without_error():
    assert PutReply().err is None
    reply = GetReply()
    assert (reply.value, reply.version, reply.err) == ("", 0, None)


def test_put_args_round_trip():
    args = PutArgs(key="k", value="6.5840", version=3)
    assert _round_trip(args, PutArgs) == args


def test_get_reply_round_trip_keeps_err_type():
    reply = GetReply(value="v", version=2, err=Err.ERR_VERSION)
    decoded = _round_trip(reply, GetReply)
    assert decoded == reply
    assert decoded.err is Err.ERR_VERSION


def test_decode_into_fresh_reply_fills_fields():
    decoded = _round_trip(PutReply(err=Err.ERR_NO_KEY), PutReply())
    assert decoded.err is Err.ERR_NO_KEY


def test_get_args_round_trip():
    assert _round_trip(GetArgs(key="x"), GetArgs).key == "x"