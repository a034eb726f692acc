from __future__ import annotations

import re


def test_root_serves_page_with_encoded_lookup(client, fake_upstream):
    resp = client.get("/", base_url="https://example.com")
    html = resp.get_data(as_text=True)
    assert resp.status_code == 200
    assert resp.mimetype == "text/html"
    assert "/api/ipapi?q=${encodeURIComponent(ip)}" in html
    assert fake_upstream.calls == []


def test_page_never_interpolates_raw_values(client):
    html = client.get("/").get_data(as_text=True)
    script = html[html.index("<script>"):html.index("</script>")]
    assert "'/api/ipapi?q=' +" not in script
    assert not re.search(r"\?q=\$\{(?!encodeURIComponent\()", script)
    assert "innerHTML" not in script


def test_page_is_static_and_has_csp(client):
    first = client.get("/", query_string={"q": "<script>alert(1)</script>"})
    second = client.get("/")
    assert first.data == second.data
    assert "connect-src 'self'" in first.headers["content-security-policy"]
