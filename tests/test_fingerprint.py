from dataclasses import dataclass

from querycache.services.fingerprint import (
    RequestDescriptor,
    TransferCache,
    create_equal_request,
    equal_headers,
    equal_params,
    equal_request,
    fingerprint,
    normalize_params,
    request_key,
    stable_hash,
)


class TestStableHash:
    def test_key_order_independent(self):
        assert stable_hash({"a": 1, "b": {"x": 1, "y": 2}}) == stable_hash(
            {"b": {"y": 2, "x": 1}, "a": 1}
        )

    def test_distinguishes_values(self):
        assert stable_hash({"a": 1}) != stable_hash({"a": 2})

    def test_dataclass_values(self):
        @dataclass
        class Point:
            x: int
            y: int

        assert stable_hash(Point(1, 2)) == stable_hash({"y": 2, "x": 1})


class TestEquality:
    def test_param_order_does_not_matter(self):
        a = RequestDescriptor(url="/api", params={"a": 1, "b": 2})
        b = RequestDescriptor(url="/api", params={"b": 2, "a": 1})

        assert equal_request(a, b)
        assert fingerprint(a) == fingerprint(b)

    def test_multi_value_params_are_unordered(self):
        assert equal_params({"tag": ["x", "y"]}, {"tag": ["y", "x"]})
        assert not equal_params({"tag": ["x", "y"]}, {"tag": ["x", "x"]})

    def test_scalar_equals_single_element_list(self):
        assert equal_params({"a": "1"}, {"a": ["1"]})

    def test_none_and_empty_maps_are_equal(self):
        assert equal_params(None, {})
        assert equal_headers({}, None)
        assert not equal_params(None, {"a": 1})

    def test_header_names_are_case_insensitive(self):
        assert equal_headers({"Accept": "json"}, {"accept": "json"})
        assert not equal_headers({"Accept": "json"}, {"accept": "xml"})

    def test_method_and_url(self):
        base = RequestDescriptor(url="/api")
        assert equal_request(base, RequestDescriptor(url="/api", method="get"))
        assert not equal_request(base, RequestDescriptor(url="/api", method="POST"))
        assert not equal_request(base, RequestDescriptor(url="/other"))

    def test_body_compared_structurally(self):
        a = RequestDescriptor(url="/api", method="POST", body={"a": 1, "b": [1, 2]})
        b = RequestDescriptor(url="/api", method="POST", body={"b": [1, 2], "a": 1})
        c = RequestDescriptor(url="/api", method="POST", body={"a": 2, "b": [1, 2]})

        assert equal_request(a, b)
        assert not equal_request(a, c)

    def test_custom_body_equality(self):
        eq = create_equal_request(lambda a, b: a["id"] == b["id"])
        a = RequestDescriptor(url="/api", body={"id": 1, "at": 1})
        b = RequestDescriptor(url="/api", body={"id": 1, "at": 2})

        assert eq(a, b)

    def test_none_requests(self):
        assert equal_request(None, None)
        assert not equal_request(None, RequestDescriptor(url="/api"))

    def test_flags_and_context(self):
        base = RequestDescriptor(url="/api", context={"k": 1}, transfer_cache=True)

        assert equal_request(
            base, RequestDescriptor(url="/api", context={"k": 1}, transfer_cache=True)
        )
        assert not equal_request(
            base, RequestDescriptor(url="/api", context={"k": 2}, transfer_cache=True)
        )
        assert not equal_request(
            base, RequestDescriptor(url="/api", context={"k": 1}, with_credentials=True)
        )

    def test_transfer_cache_headers_unordered(self):
        a = RequestDescriptor(url="/api", transfer_cache=TransferCache(["a", "b"]))
        b = RequestDescriptor(url="/api", transfer_cache=TransferCache(["b", "a"]))

        assert equal_request(a, b)


class TestFingerprint:
    def test_format(self):
        request = RequestDescriptor(url="/api/users", params={"page": 2, "active": True})

        assert fingerprint(request) == "GET /api/users?active=true&page=2"

    def test_body_changes_key(self):
        a = RequestDescriptor(url="/api", method="POST", body={"a": 1})
        b = RequestDescriptor(url="/api", method="POST", body={"a": 2})

        assert fingerprint(a) != fingerprint(b)
        assert fingerprint(a).startswith("POST /api ")

    def test_normalize_params_encodes_values(self):
        assert normalize_params({"q": "a b", "ids": [1, 2]}) == "ids=1,2&q=a%20b"

    def test_merge_replaces_given_fields(self):
        base = RequestDescriptor(url="/api", params={"page": 1}, headers={"x": "1"})
        merged = base.merge(params={"page": 2}, url=None)

        assert merged.url == "/api"
        assert merged.params == {"page": 2}
        assert merged.headers == {"x": "1"}

    def test_commas_inside_values_stay_distinct(self):
        single = RequestDescriptor(url="/api", params={"a": ["x,y"]})
        pair = RequestDescriptor(url="/api", params={"a": ["x", "y"]})

        assert not equal_request(single, pair)
        assert fingerprint(single) == "GET /api?a=x%2Cy"
        assert fingerprint(pair) == "GET /api?a=x,y"


class TestRequestKey:
    def test_equal_requests_share_key(self):
        a = RequestDescriptor(
            url="/api",
            params={"tag": ["x", "y"], "page": 1},
            headers={"Accept": "json"},
            context={"tenant": "a"},
        )
        b = RequestDescriptor(
            url="/api",
            method="get",
            params={"page": [1], "tag": ["y", "x"]},
            headers={"accept": ["json"]},
            context={"tenant": "a"},
        )

        assert equal_request(a, b)
        assert request_key(a) == request_key(b)

    def test_empty_maps_equal_missing(self):
        assert request_key(RequestDescriptor(url="/api", params={}, headers={})) == request_key(
            RequestDescriptor(url="/api")
        )

    def test_every_compared_field_changes_key(self):
        base = RequestDescriptor(url="/api")
        variants = [
            base.merge(headers={"Authorization": "bob"}),
            base.merge(context={"tenant": "b"}),
            base.merge(with_credentials=True),
            base.merge(report_progress=True),
            base.merge(transfer_cache=TransferCache(["etag"])),
            base.merge(body={"a": 1}),
        ]

        keys = {request_key(base), *(request_key(v) for v in variants)}

        assert len(keys) == len(variants) + 1
        for variant in variants:
            assert not equal_request(base, variant)
