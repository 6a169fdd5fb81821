from inboxpay.text_utils import mask, strip_html


def test_strip_html_keeps_line_breaks_and_decodes_entities():
    html = "<style>p{color:red}</style><p>Total:&nbsp;$5</p><div>Card &amp; cash</div><script>x()</script>"

    lines = [line.strip() for line in strip_html(html).splitlines() if line.strip()]

    assert lines == ["Total:\xa0$5", "Card & cash"]
    assert strip_html(None) == ""


def test_mask_keeps_only_a_prefix():
    assert mask("ya29.a0AfH6SMBverylongtoken") == "ya29.a..."
    assert mask("short") == "<redacted>"
    assert mask(None) == "<none>"
