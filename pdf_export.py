from __future__ import annotations
from datetime import date
from io import BytesIO
from typing import Dict, List
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from models import Settings, StudyPlan, Task, UnscheduledTask


def _status_label(session) -> str:
    if session.done:
        return "Done"
    return session.status.replace("_", " ").capitalize()


def plans_to_pdf(
    plans: List[StudyPlan],
    tasks: List[Task],
    settings: Settings,
    start: date,
    end: date,
    unscheduled: List[UnscheduledTask] | None = None,
) -> bytes:
    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        leftMargin=40,
        rightMargin=40,
        topMargin=40,
        bottomMargin=40,
    )
    styles = getSampleStyleSheet()
    elems = []

    elems.append(Paragraph(f"Study Plan: {start.isoformat()} - {end.isoformat()}", styles["Title"]))
    elems.append(Spacer(1, 10))
    work_days = ", ".join(date(2024, 1, 1 + d).strftime("%a") for d in sorted(settings.work_days)) or "None"
    elems.append(Paragraph(
        f"Hours/day: {settings.daily_available_hours:g} | Work days: {work_days} "
        f"| Mode: {settings.study_plan_mode} | Buffer: {settings.buffer_time_between_sessions}m",
        styles["Normal"],
    ))
    elems.append(Paragraph(
        f"Study window: {settings.study_window_start_hour}:00 - {settings.study_window_end_hour}:00",
        styles["Normal"],
    ))
    elems.append(Spacer(1, 12))

    if unscheduled:
        elems.append(Paragraph("Unscheduled work", styles["Heading3"]))
        rows = [["Task", "Deadline", "Unscheduled (h)", "Important"]]
        for item in unscheduled:
            rows.append([
                item.task_title,
                item.deadline.isoformat(),
                f"{item.unscheduled_hours:.1f}",
                "Yes" if item.importance else "No",
            ])
        table = Table(rows, hAlign="LEFT")
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("ALIGN", (2, 1), (2, -1), "RIGHT"),
        ]))
        elems.append(table)
        elems.append(Spacer(1, 12))

    titles: Dict[str, str] = {t.id: t.title for t in tasks}
    shown = 0
    for plan in sorted(plans, key=lambda p: p.date):
        if not start <= plan.date <= end or not plan.sessions:
            continue
        heading = plan.date.strftime("%A, %Y-%m-%d")
        if plan.is_overloaded:
            heading += " (full)"
        elems.append(Paragraph(heading, styles["Heading3"]))
        table_data = [["Time", "Task", "Hours", "Status"]]
        for session in plan.sessions:
            table_data.append([
                f"{session.start_time}-{session.end_time}",
                titles.get(session.task_id, session.task_id),
                f"{session.allocated_hours:.2f}",
                _status_label(session),
            ])
        table_data.append(["Total", "", f"{plan.total_study_hours:.2f}", f"of {plan.available_hours:.2f}h"])

        table = Table(table_data, hAlign="LEFT", colWidths=[80, 200, 60, 120])
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("BACKGROUND", (0, -1), (-1, -1), colors.whitesmoke),
            ("ALIGN", (2, 1), (2, -1), "RIGHT"),
        ]))
        elems.append(table)
        elems.append(Spacer(1, 8))
        shown += 1

    if not shown:
        elems.append(Paragraph("No study sessions in this range.", styles["Normal"]))

    doc.build(elems)
    return buf.getvalue()
