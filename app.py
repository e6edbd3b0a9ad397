from __future__ import annotations
import streamlit as st
import pandas as pd
from datetime import date, datetime, timedelta
from uuid import uuid4

import state as engine
from calendar_export import sessions_to_ics
from calendar_import import parse_ics_bytes
from config import get_config
from conflicts import ConflictValidationResult
from lifecycle import derive_runtime_status
from logging_config import configure_logging
from models import FixedCommitment, ScheduleState, Settings, Task
from pdf_export import plans_to_pdf
from planner import FeasibilityReport
from redistribution import RedistributionResult
from profiles import (
    create_profile,
    delete_profile,
    list_profiles,
    load_profile,
    save_profile,
)


DAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

st.set_page_config(page_title="Study Plan Scheduler", page_icon="📚", layout="wide")


def _ensure_session_state() -> list[str]:
    config = get_config()
    configure_logging(log_level=config.log_level)
    profiles = list_profiles()
    if not profiles:
        create_profile(config.default_profile)
        profiles = list_profiles()

    if "profile_name" not in st.session_state or st.session_state.profile_name not in profiles:
        preferred = config.default_profile
        st.session_state.profile_name = preferred if preferred in profiles else profiles[0]

    if "state" not in st.session_state:
        st.session_state.state = load_profile(st.session_state.profile_name)

    return profiles


def _switch_profile(name: str) -> None:
    st.session_state.profile_name = name
    st.session_state.state = load_profile(name)


def _coerce_date(value: object) -> date | None:
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, date):
        return value
    return None


def _queue_toast(message: str) -> None:
    st.session_state.toast_message = message


def _flush_toast() -> None:
    message = st.session_state.pop("toast_message", None)
    if message:
        st.toast(message)


def _show_report(report: object) -> None:
    if isinstance(report, FeasibilityReport):
        if report.blocked:
            st.error(report.reason)
        elif report.reason:
            st.warning(report.reason)
    elif isinstance(report, ConflictValidationResult):
        for c in report.conflicts:
            st.error(c.message)
        for w in report.warnings:
            st.warning(w.message)
        for s in report.suggestions:
            st.caption(s)
    elif isinstance(report, RedistributionResult):
        if report.rolled_back:
            st.error("Redistribution created conflicts and was rolled back.")
        else:
            st.info(f"Moved {len(report.moved)} session(s), {len(report.failed)} could not be placed.")


def dispatch(command, message: str | None = None) -> object:
    """Run one command through the reducer, persist, and return its report."""
    try:
        outcome = engine.apply(st.session_state.state, command, now=datetime.now())
    except (LookupError, ValueError) as e:
        st.error(str(e))
        return None
    st.session_state.state = outcome.state
    save_profile(current_profile, outcome.state)
    if message:
        _queue_toast(message)
    return outcome.report


def render_tasks(state: ScheduleState) -> None:
    st.header("Tasks")

    st.subheader("Add task")
    with st.form("add_task_form", clear_on_submit=True):
        col1, col2, col3, col4 = st.columns([2, 1, 1, 1])
        with col1:
            title = st.text_input("Title", placeholder="Thesis chapter 2")
        with col2:
            est_hours = st.number_input("Estimated hours", min_value=0.25, max_value=500.0, value=4.0, step=0.25)
        with col3:
            deadline = st.date_input("Deadline", value=date.today() + timedelta(days=7))
        with col4:
            importance = st.checkbox("Important")
        with st.expander("Session preferences", expanded=False):
            one_sitting = st.checkbox("Finish in one sitting")
            max_len = st.number_input("Max session (h, 0 = default)", min_value=0.0, max_value=12.0, value=0.0, step=0.25)
            slots = st.multiselect("Preferred time", ["morning", "afternoon", "evening"])
            frequency = st.selectbox("Frequency", ["daily", "3x-week", "weekly", "flexible"])
        force = st.checkbox("Add even if it does not fit")
        if st.form_submit_button("Add task", type="primary"):
            if not title.strip():
                st.warning("Title is required.")
            else:
                task = Task(
                    id=str(uuid4()),
                    title=title.strip(),
                    deadline=deadline,
                    importance=importance,
                    estimated_hours=float(est_hours),
                    is_one_time_task=one_sitting,
                    max_session_length=max_len or None,
                    preferred_time_slots=slots,
                    target_frequency=frequency,
                )
                report = dispatch(engine.AddTask(task=task, force=force))
                _show_report(report)
                if report is not None and not report.blocked:
                    st.toast("Task added.")

    st.divider()
    st.subheader("Task manager")
    if not state.tasks:
        st.info("No tasks yet.")
        return

    rows = [
        {
            "Select": False,
            "id": t.id,
            "Title": t.title,
            "Deadline": t.deadline,
            "Important": t.importance,
            "Est hours": t.estimated_hours,
            "Status": t.status,
        }
        for t in state.tasks
    ]
    edited = st.data_editor(
        pd.DataFrame(rows).set_index("id"),
        hide_index=True,
        use_container_width=True,
        column_config={
            "Select": st.column_config.CheckboxColumn("Select"),
            "Deadline": st.column_config.DateColumn("Deadline"),
            "Est hours": st.column_config.NumberColumn("Est hours", format="%.2f", min_value=0.0, step=0.25),
        },
        disabled=["Status"],
        key=f"tasks_editor_{current_profile}",
    )
    records = edited.reset_index().to_dict("records")
    col_apply, col_delete = st.columns([1, 1])

    if col_apply.button("Apply changes"):
        by_id = {t.id: t for t in state.tasks}
        for row in records:
            task = by_id.get(row["id"])
            if not task:
                continue
            changes = {}
            if str(row.get("Title") or "").strip() and row["Title"] != task.title:
                changes["title"] = str(row["Title"]).strip()
            deadline = _coerce_date(row.get("Deadline"))
            if deadline and deadline != task.deadline:
                changes["deadline"] = deadline
            if bool(row.get("Important")) != task.importance:
                changes["importance"] = bool(row.get("Important"))
            est = row.get("Est hours")
            if est is not None and not pd.isna(est) and float(est) != task.estimated_hours:
                changes["estimated_hours"] = float(est)
            if changes:
                dispatch(engine.UpdateTask(task_id=task.id, changes=changes))
        _queue_toast("Tasks updated.")
        st.rerun()

    selected = [row["id"] for row in records if row.get("Select")]
    if col_delete.button("Delete selected"):
        if not selected:
            st.warning("Select at least one task to delete.")
        else:
            for task_id in selected:
                dispatch(engine.DeleteTask(task_id=task_id))
            _queue_toast("Tasks deleted.")
            st.rerun()


def render_commitments(state: ScheduleState) -> None:
    st.header("Commitments")

    with st.form("add_commitment_form", clear_on_submit=True):
        title = st.text_input("Title", placeholder="Lecture")
        recurring = st.checkbox("Weekly", value=True)
        days = st.multiselect("Days", options=list(range(7)), format_func=lambda x: DAY_LABELS[x])
        on_date = st.date_input("Date (one-time)", value=date.today())
        all_day = st.checkbox("All day")
        col1, col2 = st.columns(2)
        start_time = col1.text_input("Start (HH:MM)", value="09:00")
        end_time = col2.text_input("End (HH:MM)", value="10:00")
        counts = st.checkbox("Counts toward daily hours", value=True)
        if st.form_submit_button("Add commitment", type="primary"):
            commitment = FixedCommitment(
                id=str(uuid4()),
                title=title.strip() or "Commitment",
                recurring=recurring,
                days_of_week=days if recurring else [],
                specific_dates=[] if recurring else [on_date],
                start_time=None if all_day else start_time,
                end_time=None if all_day else end_time,
                is_all_day=all_day,
                counts_toward_daily_hours=counts,
            )
            dispatch(engine.AddCommitment(commitment=commitment), "Commitment added.")
            st.rerun()

    st.subheader("Import calendar (.ics)")
    uploaded = st.file_uploader("Upload .ics file", type=["ics"], key="ics_upload")
    if uploaded:
        try:
            parsed = parse_ics_bytes(uploaded.read())
        except ValueError as e:
            st.error(f"Could not read ICS file: {e}")
            parsed = []
        if parsed and st.button(f"Import {len(parsed)} commitment(s)", type="primary"):
            known = {c.id for c in state.commitments}
            for commitment in parsed:
                if commitment.id not in known:
                    dispatch(engine.AddCommitment(commitment=commitment))
            _queue_toast("Commitments imported.")
            st.rerun()

    st.divider()
    if not state.commitments:
        st.info("No commitments stored yet.")
        return
    for c in state.commitments:
        when = ", ".join(DAY_LABELS[d] for d in c.days_of_week) if c.recurring else ", ".join(
            d.isoformat() for d in c.specific_dates
        )
        hours = "all day" if c.is_all_day else f"{c.start_time}-{c.end_time}"
        col_text, col_button = st.columns([4, 1])
        col_text.write(f"**{c.title}** · {when} · {hours}")
        if col_button.button("Delete", key=f"del_commitment_{c.id}"):
            dispatch(engine.DeleteCommitment(commitment_id=c.id), "Commitment deleted.")
            st.rerun()


def render_plan(state: ScheduleState) -> None:
    st.header("Plan")
    now = datetime.now()

    col_gen, col_redistribute = st.columns(2)
    if col_gen.button("Generate / Refresh plan", type="primary"):
        dispatch(engine.RegeneratePlan(), "Plan generated.")
        st.rerun()
    if col_redistribute.button("Redistribute missed sessions"):
        _show_report(dispatch(engine.RedistributeMissed()))

    for item in state.unscheduled:
        st.warning(f"{item.task_title}: {item.unscheduled_hours:.1f}h could not be scheduled before the deadline.")

    week_start = st.date_input("From", value=now.date())
    week_end = week_start + timedelta(days=6)
    titles = {t.id: t.title for t in state.tasks}

    for plan in state.plans:
        if not week_start <= plan.date <= week_end:
            continue
        label = plan.date.strftime("%a %Y-%m-%d")
        st.subheader(f"{label} · {plan.total_study_hours:.2f}h of {plan.available_hours:.2f}h")
        for s in plan.sessions:
            status = derive_runtime_status(s, plan.date, now)
            ref = {"task_id": s.task_id, "session_number": s.session_number}
            cols = st.columns([3, 1, 1, 1, 1])
            cols[0].write(f"{s.start_time}-{s.end_time} · {titles.get(s.task_id, s.task_id)} · {status}")
            key = f"{s.task_id}_{s.session_number}"
            if cols[1].button("Start", key=f"start_{key}", disabled=status not in ("scheduled", "rescheduled", "redistributed")):
                dispatch(engine.StartSession(**ref))
                st.rerun()
            if cols[2].button("Done", key=f"done_{key}", disabled=s.is_finished):
                dispatch(engine.MarkSessionDone(**ref), "Session completed.")
                st.rerun()
            if cols[3].button("Skip", key=f"skip_{key}", disabled=s.is_finished):
                dispatch(engine.SkipSession(**ref), "Session skipped.")
                st.rerun()
            if cols[4].button("Undo", key=f"undo_{key}", disabled=not s.is_finished):
                dispatch(engine.UndoSession(**ref), "Session reopened.")
                st.rerun()

    movable = [(p.date, s) for p in state.plans for s in p.sessions if not s.is_finished]
    if movable:
        with st.expander("Move a session", expanded=False):
            with st.form("move_session_form"):
                choice = st.selectbox(
                    "Session",
                    movable,
                    format_func=lambda pair: f"{pair[0]} {pair[1].start_time} {titles.get(pair[1].task_id, '')}",
                )
                new_date = st.date_input("New date", value=now.date())
                start_time = st.text_input("Start (HH:MM)", value="18:00")
                end_time = st.text_input("End (HH:MM)", value="19:00")
                if st.form_submit_button("Move"):
                    _, session = choice
                    _show_report(dispatch(engine.MoveSession(
                        task_id=session.task_id,
                        session_number=session.session_number,
                        new_date=new_date,
                        start_time=start_time,
                        end_time=end_time,
                    )))

    st.divider()
    st.subheader("Exports")
    in_range = [p for p in state.plans if week_start <= p.date <= week_end]
    if in_range:
        st.download_button(
            "Download ICS",
            data=sessions_to_ics(in_range, state.tasks),
            file_name=f"study_plan_{week_start.isoformat()}.ics",
            mime="text/calendar",
        )
        st.download_button(
            "Download PDF",
            data=plans_to_pdf(in_range, state.tasks, state.settings, week_start, week_end, state.unscheduled),
            file_name=f"study_plan_{week_start.isoformat()}.pdf",
            mime="application/pdf",
        )
    else:
        st.info("No sessions to export for this range.")


def render_settings(state: ScheduleState) -> None:
    st.header("Settings")
    current = state.settings

    with st.form("settings_form"):
        hours = st.slider("Study hours per day", 0.5, 16.0, float(current.daily_available_hours), 0.5)
        work_days = st.multiselect(
            "Work days",
            options=list(range(7)),
            format_func=lambda x: DAY_LABELS[x],
            default=current.work_days,
        )
        start_hour, end_hour = st.slider(
            "Study window", 0, 24, (current.study_window_start_hour, current.study_window_end_hour)
        )
        mode = st.selectbox(
            "Plan mode", ["even", "eisenhower", "balanced"],
            index=["even", "eisenhower", "balanced"].index(current.study_plan_mode),
        )
        with st.expander("Advanced settings", expanded=False):
            buffer_days = st.number_input("Buffer days before deadline", 0, 30, current.buffer_days)
            min_session = st.number_input("Minimum session (minutes)", 5, 240, current.min_session_length, 5)
            gap = st.number_input("Break between sessions (minutes)", 0, 120, current.buffer_time_between_sessions, 5)
            max_block = st.number_input("Max consecutive hours", 0.5, 12.0, float(current.max_consecutive_hours), 0.5)
            credit_partial = st.checkbox(
                "Credit partial hours of skipped sessions", value=current.credit_partial_skip_hours
            )
        if st.form_submit_button("Save settings", type="primary"):
            updated = current.model_copy(update={
                "daily_available_hours": hours,
                "work_days": sorted(work_days),
                "study_window_start_hour": min(start_hour, 23),
                "study_window_end_hour": max(end_hour, 1),
                "study_plan_mode": mode,
                "buffer_days": int(buffer_days),
                "min_session_length": int(min_session),
                "buffer_time_between_sessions": int(gap),
                "max_consecutive_hours": float(max_block),
                "credit_partial_skip_hours": credit_partial,
            })
            _show_report(dispatch(engine.UpdateSettings(settings=Settings.model_validate(updated.model_dump()))))
            st.toast("Settings saved.")


profiles = _ensure_session_state()
state: ScheduleState = st.session_state.state
current_profile = st.session_state.profile_name

st.title("Study Plan Scheduler")
st.caption("Deadline-driven study sessions that work around your commitments.")
_flush_toast()

with st.sidebar:
    st.header("Profile")
    profiles = list_profiles()
    selected_profile = st.selectbox(
        "Active profile",
        options=profiles,
        index=profiles.index(current_profile) if current_profile in profiles else 0,
    )
    if selected_profile != current_profile:
        _switch_profile(selected_profile)
        st.rerun()

    with st.form("create_profile_form"):
        new_profile_name = st.text_input("New profile name", placeholder="e.g. Semester A")
        if st.form_submit_button("Create profile"):
            try:
                new_state = create_profile(new_profile_name)
            except ValueError as e:
                st.error(str(e))
            else:
                _queue_toast(f"Profile '{new_profile_name.strip()}' created.")
                st.session_state.profile_name = new_profile_name.strip()
                st.session_state.state = new_state
                st.rerun()

    if st.button("Delete profile", disabled=len(profiles) <= 1):

        @st.dialog("Delete profile?")
        def _confirm_delete_profile() -> None:
            st.write(f"Delete profile '{current_profile}' and its data?")
            if st.button("Delete", type="primary"):
                delete_profile(current_profile)
                _switch_profile(list_profiles()[0])
                _queue_toast("Profile deleted.")
                st.rerun()

        _confirm_delete_profile()

    st.divider()
    st.header("Navigate")
    page = st.radio("Page", ["Tasks", "Commitments", "Plan", "Settings"], key="nav_page")

if page == "Tasks":
    render_tasks(state)
elif page == "Commitments":
    render_commitments(state)
elif page == "Plan":
    render_plan(state)
elif page == "Settings":
    render_settings(state)
