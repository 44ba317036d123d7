import json

from tools.generate_report import load_events, main, render_report

EVENTS = [
    {"timestamp": 1000.0, "client_ip": "5.5.5.5", "country": "US", "language": "en-US",
     "referer": "https://google.com/", "path": "/", "action": "DENY", "reasons": ["country", "referer"]},
    {"timestamp": 1001.0, "client_ip": "6.6.6.6", "country": "FR", "language": "fr-FR",
     "referer": None, "path": "/", "action": "ALLOW", "reasons": []},
]


def test_report_counts_denials():
    html = render_report(EVENTS)
    assert "<tr><td>country</td><td>1</td></tr>" in html
    assert "<tr><td>referer</td><td>1</td></tr>" in html
    assert "<tr><td>US</td><td>1</td></tr>" in html
    assert "<td>6.6.6.6</td>" not in html


def test_main_writes_report(tmp_path):
    log = tmp_path / "events.jsonl"
    log.write_text("\n".join(json.dumps(e) for e in EVENTS) + "\n\n", encoding="utf-8")
    out = tmp_path / "out" / "report.html"

    assert len(load_events(log)) == 2
    main([str(log), str(out)])
    assert "Visitor Filter Report" in out.read_text(encoding="utf-8")


def test_missing_log_is_empty(tmp_path):
    assert load_events(tmp_path / "nope.jsonl") == []


def test_request_values_are_escaped():
    hostile = {"timestamp": 1002.0, "client_ip": "7.7.7.7", "country": None,
               "language": "<b>x", "referer": "<script>alert(1)</script>",
               "path": "/\"><img src=x>", "action": "DENY", "reasons": ["referer"]}
    html = render_report([hostile])
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "<img src=x>" not in html
    assert "<td>&lt;b&gt;x</td>" in html
