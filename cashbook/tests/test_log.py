import json
import logging
import unittest

from cashbook.log import JsonFormatter, RequestContextFilter, owner_id_ctx, request_id_ctx


class JsonLoggingTests(unittest.TestCase):
    def make_record(self) -> logging.LogRecord:
        return logging.LogRecord(
            name="cashbook.service",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="applied recurring rule %s",
            args=(7,),
            exc_info=None,
        )

    def test_record_carries_request_context(self) -> None:
        rid_token = request_id_ctx.set("req-1")
        owner_token = owner_id_ctx.set("42")
        try:
            record = self.make_record()
            RequestContextFilter().filter(record)
        finally:
            owner_id_ctx.reset(owner_token)
            request_id_ctx.reset(rid_token)

        line = json.loads(JsonFormatter().format(record))

        self.assertEqual(line["message"], "applied recurring rule 7")
        self.assertEqual(line["level"], "INFO")
        self.assertEqual(line["logger"], "cashbook.service")
        self.assertEqual(line["request_id"], "req-1")
        self.assertEqual(line["owner_id"], "42")

    def test_defaults_outside_a_request(self) -> None:
        record = self.make_record()
        RequestContextFilter().filter(record)

        line = json.loads(JsonFormatter().format(record))

        self.assertEqual(line["request_id"], "-")
        self.assertEqual(line["owner_id"], "-")


if __name__ == "__main__":
    unittest.main()
