# report.py
from __future__ import annotations
import io
import json
from xml.sax.saxutils import escape
from datetime import datetime

import pandas as pd

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import inch
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle,
    Image, Flowable
)
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle

try:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except Exception:  # pragma: no cover - optional dependency
    plt = None

# ---------- helpers ----------
def _nice_float(x, n=3):
    try:
        return round(float(x), n)
    except Exception:
        return x

def _table(data, header_size=10, body_size=9, col_widths=None) -> Table:
    t = Table(data, repeatRows=1, colWidths=col_widths)
    t.setStyle(TableStyle([
        ("BACKGROUND", (0,0), (-1,0), colors.whitesmoke),
        ("TEXTCOLOR", (0,0), (-1,0), colors.black),
        ("ALIGN", (0,0), (-1,-1), "LEFT"),
        ("VALIGN", (0,0), (-1,-1), "TOP"),
        ("FONTNAME", (0,0), (-1,0), "Helvetica-Bold"),
        ("FONTSIZE", (0,0), (-1,0), header_size),
        ("BOTTOMPADDING", (0,0), (-1,0), 6),
        ("GRID", (0,0), (-1,-1), 0.25, colors.lightgrey),
        ("FONTSIZE", (0,1), (-1,-1), body_size),
    ]))
    return t

def _kpi_rows(snap: dict) -> list:
    k = snap.get("kpis", {})
    return [
        ["Simulated day", "Value-at-risk $", "Service risk", "Avg DC util", "Late shipments"],
        [
            snap.get("day", 0),
            f"{int(k.get('value_at_risk', 0)):,}",
            _nice_float(k.get("service_risk", 0), 3),
            _nice_float(k.get("avg_dc_util", 0), 3),
            k.get("late_shipments", 0),
        ],
    ]

def _scenario_line(snap: dict) -> str:
    flags = snap.get("scenario", {})
    pins = snap.get("scenario_pinned", {})
    on = [name for name, val in flags.items() if val]
    if not on:
        return "Scenario: normal operations."
    pinned = ", ".join(f"{k}={v}" for k, v in pins.items() if v)
    return f"Scenario: {', '.join(on)}" + (f" (pinned: {pinned})" if pinned else "") + "."

def _exceptions_frame(snap: dict) -> pd.DataFrame:
    df = pd.DataFrame(snap.get("top_exceptions", []))
    if df.empty:
        return df
    keep = [c for c in ["id", "type", "value_at_risk", "risk_score"] if c in df.columns]
    df = df[keep].copy()
    df.rename(columns={"id": "Exception", "type": "Type", "value_at_risk": "VaR $", "risk_score": "Risk"}, inplace=True)
    return df

def _cost_index_chart(snap: dict):
    if plt is None or not snap.get("cost_index"):
        return None
    pts = pd.DataFrame(snap["cost_index"])
    fig, ax = plt.subplots(figsize=(8, 2.6))
    ax.plot(pts["day"], pts["index"], marker="o", linewidth=1.5)
    ax.set_xlabel("Day")
    ax.set_ylabel("Cost index")
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=150)
    plt.close(fig)
    buf.seek(0)
    return Image(buf, width=9*inch, height=2.9*inch)

# ---------- main API ----------
def make_pdf(snapshot_json: str, out_pdf: str, max_log: int = 40):
    with open(snapshot_json, "r", encoding="utf-8") as fh:
        snap = json.load(fh)

    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="H0", parent=styles["Title"], fontSize=20, leading=24))
    styles.add(ParagraphStyle(name="H1", parent=styles["Heading2"], spaceBefore=10, spaceAfter=6))
    styles.add(ParagraphStyle(name="Small", parent=styles["BodyText"], fontSize=9, leading=12))
    styles.add(ParagraphStyle(name="Caption", parent=styles["BodyText"], fontSize=9, textColor=colors.grey))

    doc = SimpleDocTemplate(out_pdf, pagesize=landscape(A4), leftMargin=28, rightMargin=28, topMargin=24, bottomMargin=24)
    flow: list[Flowable] = []

    # ---- Title ----
    flow.append(Paragraph("Supply Chain Control Tower - Audit Report", styles["H0"]))
    captured = snap.get("captured_at") or datetime.now().isoformat()
    flow.append(Paragraph(f"Captured {captured} · seed {snap.get('seed', '-')}", styles["Small"]))
    flow.append(Paragraph(_scenario_line(snap), styles["Small"]))
    flow.append(Spacer(1, 8))

    # ---- KPIs ----
    flow.append(Paragraph("Headline KPIs", styles["H1"]))
    flow.append(_table(_kpi_rows(snap)))
    flow.append(Spacer(1, 10))

    # ---- Top exceptions ----
    df = _exceptions_frame(snap)
    if not df.empty:
        flow.append(Paragraph("Top Exceptions (ranked by value-at-risk)", styles["H1"]))
        flow.append(_table([list(df.columns)] + df.values.tolist(), body_size=8))
        flow.append(Spacer(1, 10))

    # ---- Cost index ----
    chart = _cost_index_chart(snap)
    if chart is not None:
        flow.append(Paragraph("Cost Index", styles["H1"]))
        flow.append(chart)
        flow.append(Paragraph("Freight cost index over the retained window; drift feeds late-probability scoring.", styles["Caption"]))
        flow.append(Spacer(1, 10))

    # ---- Audit log ----
    log = snap.get("action_log", [])[:max_log]
    flow.append(Paragraph("Audit Log (newest first)", styles["H1"]))
    if log:
        rows = [["Day", "Type", "Detail"]] + [
            [e.get("day", ""), e.get("type", ""), Paragraph(escape(str(e.get("detail", ""))), styles["Small"])] for e in log
        ]
        flow.append(_table(rows, body_size=8, col_widths=[0.6*inch, 1.9*inch, 8.2*inch]))
    else:
        flow.append(Paragraph("No actions recorded.", styles["Small"]))

    # ---- Build ----
    doc.build(flow)
    print(f"✅ PDF report saved → {out_pdf}")
