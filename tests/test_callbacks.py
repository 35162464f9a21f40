import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from contratrack import callbacks


def test_mk_and_parse_roundtrip():
    data = callbacks.mk_cb("apr", id=1, d="A")
    parsed = callbacks.parse_cb(data)
    assert parsed is not None
    assert parsed["a"] == "apr"
    assert parsed["id"] == 1


def test_parse_cb_bad_signature():
    bad = "deadbe|{" "a" ": " "x" "}"
    assert callbacks.parse_cb(bad) is None
    assert callbacks.parse_cb("no separator") is None
    assert callbacks.parse_cb(None) is None


def test_tampered_payload_is_rejected():
    data = callbacks.mk_cb("apr", id=1, d="R")
    forged = data.replace('"id":1', '"id":2')
    assert callbacks.parse_cb(forged) is None
    assert callbacks.parse_approval_callback(forged).error == "bad-signature"


def test_parse_approval_callback():
    res = callbacks.parse_approval_callback(callbacks.mk_cb("apr", id=9, d="R"))
    assert res.ok and res.approval_id == 9 and res.decision == "REJECTED"

    assert callbacks.parse_approval_callback(callbacks.mk_cb("ping", id=9, d="A")).error == "not-approval"
    assert callbacks.parse_approval_callback(callbacks.mk_cb("apr", id="9", d="A")).error == "bad-payload"
    assert callbacks.parse_approval_callback(callbacks.mk_cb("apr", id=9, d="X")).error == "bad-payload"
