import html
import json
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
LOG_PATH = ROOT / "logs" / "events.jsonl"
REPORT_PATH = ROOT / "reports" / "visitor_report.html"


def load_events(path: Path = LOG_PATH):
    if not path.exists():
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            events.append(json.loads(line))
    return events


def fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def cell(value) -> str:
    # log fields come straight from request headers
    return "<td>" + html.escape("" if value is None else str(value)) + "</td>"


def rows(counter: Counter, limit=None) -> str:
    return "".join(f"<tr>{cell(key)}{cell(count)}</tr>" for key, count in counter.most_common(limit))


def render_report(events: list) -> str:
    denied = [e for e in events if e.get("action") == "DENY"]
    by_reason = Counter(r for e in denied for r in e.get("reasons", []))
    by_country = Counter(e.get("country") or "unknown" for e in denied)
    by_referer = Counter(e.get("referer") or "direct" for e in denied)

    recent = sorted(denied, key=lambda e: e.get("timestamp", 0), reverse=True)[:20]

    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Visitor Filter Report</title>
  <style>
    body {{ font-family: -apple-system, system-ui, Arial; margin: 24px; }}
    .card {{ border: 1px solid #ddd; border-radius: 12px; padding: 16px; margin-bottom: 16px; }}
    h1 {{ margin-top: 0; }}
    table {{ width: 100%; border-collapse: collapse; }}
    th, td {{ border-bottom: 1px solid #eee; padding: 10px; text-align: left; font-size: 14px; }}
    th {{ background: #fafafa; }}
    .muted {{ color: #666; }}
    .pill {{ display: inline-block; padding: 3px 10px; border-radius: 999px; border: 1px solid #ddd; font-size: 12px; }}
  </style>
</head>
<body>
  <h1>Visitor Filter Report</h1>
  <p class="muted">Generated: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}</p>

  <div class="card">
    <h2>Summary</h2>
    <p><span class="pill">Visitors</span> <b>{len(events)}</b></p>
    <p><span class="pill">Allowed</span> <b>{len(events) - len(denied)}</b></p>
    <p><span class="pill">Denied</span> <b>{len(denied)}</b></p>
  </div>

  <div class="card">
    <h2>Denied by Rule</h2>
    <table>
      <tr><th>Rule</th><th>Count</th></tr>
      {rows(by_reason)}
    </table>
  </div>

  <div class="card">
    <h2>Denied by Country</h2>
    <table>
      <tr><th>Country</th><th>Count</th></tr>
      {rows(by_country, 10)}
    </table>
  </div>

  <div class="card">
    <h2>Top Denied Referers</h2>
    <table>
      <tr><th>Referer</th><th>Count</th></tr>
      {rows(by_referer, 10)}
    </table>
  </div>

  <div class="card">
    <h2>Recent Denied Visitors (last 20)</h2>
    <table>
      <tr>
        <th>Time</th>
        <th>Client IP</th>
        <th>Country</th>
        <th>Language</th>
        <th>Path</th>
        <th>Rules</th>
      </tr>
      {''.join(
        "<tr>"
        + cell(fmt_ts(e.get('timestamp', 0)))
        + cell(e.get('client_ip'))
        + cell(e.get('country'))
        + cell(e.get('language'))
        + cell(e.get('path'))
        + cell(', '.join(e.get('reasons', [])))
        + "</tr>"
        for e in recent
      )}
    </table>
  </div>

</body>
</html>"""


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    log_path = Path(argv[0]) if len(argv) > 0 else LOG_PATH
    report_path = Path(argv[1]) if len(argv) > 1 else REPORT_PATH

    html = render_report(load_events(log_path))

    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(html, encoding="utf-8")
    print(f"[OK] Wrote report to: {report_path}")


if __name__ == "__main__":
    main()
