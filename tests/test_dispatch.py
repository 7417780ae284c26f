import pytest
from pymongo.errors import OperationFailure, WriteError

from navigator_fle.dispatch import Namespace, check_reply


class TestNamespace:

    def test_parse(self):
        ns = Namespace.parse("db.coll.sub")
        assert ns.database == "db"
        assert ns.collection == "coll.sub"
        assert str(ns) == "db.coll.sub"

    @pytest.mark.parametrize("value", ["db", ".coll", "db.", ""])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            Namespace.parse(value)


class TestCheckReply:

    def test_ok(self):
        reply = {"ok": 1, "n": 1}
        assert check_reply(reply) is reply

    def test_command_failure(self):
        reply = {
            "ok": 0, "code": 112, "errmsg": "WriteConflict",
            "errorLabels": ["TransientTransactionError"],
        }
        with pytest.raises(OperationFailure) as exc:
            check_reply(reply)
        assert exc.value.code == 112
        assert exc.value.has_error_label("TransientTransactionError")

    def test_write_errors(self):
        with pytest.raises(WriteError) as exc:
            check_reply({"ok": 1, "writeErrors": [{"index": 0, "code": 11000, "errmsg": "dup"}]})
        assert exc.value.code == 11000
