"""Streamlit admin console for the local gift workflow ledger."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable

import pandas as pd
import streamlit as st

from gift_ledger import (
    Actor,
    GiftLedgerStore,
    LedgerError,
    LocalTransactionQuery,
    OutboundTransactionQueue,
    TransactionStatus,
    WorkflowStatus,
    configure_logging,
    delete_pledge,
    format_currency,
    get_settings,
)

SETTINGS = get_settings()
STORE = GiftLedgerStore(SETTINGS.db_path)
QUEUE = OutboundTransactionQueue(SETTINGS.db_path)

API_FILTERS = {"Any": (None, None), "Not attempted": (False, None), "Succeeded": (True, True), "Failed": (True, False)}


def _inject_styles() -> None:
    st.markdown(
        """
        <style>
          .metric-card {
            background: #ffffff;
            border: 1px solid #c9c7c5;
            border-radius: 10px;
            padding: 0.8rem 1rem;
          }
          .metric-label { color: #3e3e3c; font-size: 0.85rem; margin: 0; }
          .metric-value { color: #032d60; font-size: 1.6rem; font-weight: 700; margin: 0; }
          .metric-sub { color: #706e6b; font-size: 0.78rem; margin: 0; }
          .section-note { color: #3e3e3c; margin-top: -0.4rem; }
        </style>
        """,
        unsafe_allow_html=True,
    )


def _render_metric_card(title: str, value: str, subtitle: str) -> None:
    st.markdown(
        f"""
        <div class="metric-card">
          <p class="metric-label">{title}</p>
          <p class="metric-value">{value}</p>
          <p class="metric-sub">{subtitle}</p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def _table_or_info(frame: pd.DataFrame, empty_message: str) -> None:
    if frame.empty:
        st.info(empty_message)
        return
    st.dataframe(frame, use_container_width=True, hide_index=True)


def _rows_to_dicts(rows: Iterable) -> list[dict]:
    return [dict(row) for row in rows]


def _yes_no(value: object) -> str:
    if value is None:
        return "-"
    return "Yes" if int(value) else "No"


def _money(cents: object) -> str:
    return format_currency(int(cents)) if cents is not None else "-"


def _utc_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def render_home() -> None:
    stats = STORE.ledger_stats()
    queue_counts = QUEUE.status_counts()
    columns = st.columns(5)

    with columns[0]:
        _render_metric_card("Workflows", str(stats["workflow_count"]), "Saved locally")
    with columns[1]:
        _render_metric_card(
            "Live Gifts",
            str(stats["live_gift_count"]),
            f"{stats['unposted_gift_count']} not yet posted remotely",
        )
    with columns[2]:
        _render_metric_card("Live Total", format_currency(stats["live_total_cents"]), "Excludes deleted pledges")
    with columns[3]:
        _render_metric_card("Reservations", str(stats["active_reservation_count"]), "Active sponsorship slots")
    with columns[4]:
        _render_metric_card(
            "Outbound Queue",
            str(queue_counts[TransactionStatus.PENDING.value]),
            f"{queue_counts[TransactionStatus.FAILED.value]} failed",
        )


def render_local_transactions_tab() -> None:
    st.markdown("### Local Transactions")
    st.markdown(
        "<p class='section-note'>Every workflow saved on this machine, newest first.</p>",
        unsafe_allow_html=True,
    )

    filter_columns = st.columns([1.4, 1, 1, 1, 1])
    with filter_columns[0]:
        search = st.text_input("Search", placeholder="Workflow id, constituent id, name, user")
    with filter_columns[1]:
        status = st.selectbox("Status", ["Any"] + [item.value for item in WorkflowStatus])
    with filter_columns[2]:
        api_filter = st.selectbox("Remote API", list(API_FILTERS))
    with filter_columns[3]:
        from_day = st.date_input("From", value=date.today() - timedelta(days=30))
    with filter_columns[4]:
        to_day = st.date_input("To", value=date.today())
    include_deleted = st.checkbox("Include deleted", value=True)

    api_attempted, api_succeeded = API_FILTERS[api_filter]
    rows = _rows_to_dicts(
        STORE.list_local_transactions(
            LocalTransactionQuery(
                from_utc=_utc_start(from_day),
                to_utc=_utc_start(to_day + timedelta(days=1)),
                search=search,
                status=None if status == "Any" else status,
                api_attempted=api_attempted,
                api_succeeded=api_succeeded,
                include_deleted=include_deleted,
            )
        )
    )

    frame = pd.DataFrame(
        [
            {
                "Workflow": row["workflow_id"],
                "Created (UTC)": row["created_at_utc"],
                "Status": row["status"],
                "Constituent": f"{row.get('constituent_name') or '-'} (#{row['constituent_id']})",
                "Amount": _money(row.get("amount_cents")),
                "Sponsorship": f"{row['sponsored_date']} {row['slot']}" if row.get("sponsored_date") else "-",
                "Posted": _yes_no(row.get("api_succeeded")),
                "Remote Gift": row.get("api_gift_id") or "-",
                "Error": row.get("api_error_message") or "",
                "Deleted": _yes_no(row.get("is_deleted")),
                "User": row["windows_user"],
            }
            for row in rows
        ]
    )
    _table_or_info(frame, "No workflows match the selected filters.")

    deletable = [row for row in rows if row.get("gift_line_id") and not row.get("is_deleted")]
    if not deletable:
        return

    st.markdown("#### Delete Pledge")
    with st.form("pledge-delete-form", clear_on_submit=True):
        labels = {
            f"{row['workflow_id']} | {row.get('constituent_name') or row['constituent_id']} | "
            f"{_money(row.get('amount_cents'))}": row["workflow_id"]
            for row in deletable
        }
        choice = st.selectbox("Workflow", list(labels))
        reason = st.text_input("Reason")
        submit = st.form_submit_button("Delete", use_container_width=True)
        if submit:
            try:
                result = delete_pledge(STORE, None, labels[choice], Actor.current(), reason)
                st.success(
                    f"Deleted locally; released {result.outcome.released_reservations} reservation(s)."
                )
                st.rerun()
            except LedgerError as exc:
                st.error(str(exc))


def render_sponsorship_tab() -> None:
    st.markdown("### Sponsorship Calendar")
    st.markdown(
        "<p class='section-note'>A date is fully booked when it holds FULL, or both AM and PM.</p>",
        unsafe_allow_html=True,
    )

    columns = st.columns(3)
    with columns[0]:
        campaign_id = int(st.number_input("Campaign record id", min_value=0, value=0, step=1))
    with columns[1]:
        start_day = st.date_input("Start", value=date.today(), key="sponsor-start")
    with columns[2]:
        end_day = st.date_input("End", value=date.today() + timedelta(days=90), key="sponsor-end")

    campaign = campaign_id or None
    booked = STORE.list_fully_booked_dates(campaign, start_day, end_day)
    st.markdown("#### Fully Booked Dates")
    _table_or_info(
        pd.DataFrame([{"Date": day.isoformat(), "Weekday": day.strftime("%A")} for day in booked]),
        "No fully booked dates in this range.",
    )

    reservations = _rows_to_dicts(
        STORE.list_reservations(
            campaign_id=campaign,
            start_date=start_day,
            end_date=end_day,
            include_cancelled=st.checkbox("Show released reservations"),
        )
    )
    st.markdown("#### Reservations")
    _table_or_info(
        pd.DataFrame(
            [
                {
                    "Date": row["sponsored_date"],
                    "Day Part": row["day_part"],
                    "Campaign": row["campaign_id"],
                    "Constituent": row.get("constituent_name") or row["constituent_id"],
                    "Tier": row.get("sponsor_tier") or "-",
                    "Required": _money(row["required_amount_cents"]),
                    "Released": _yes_no(row["is_cancelled"]),
                    "Released By": row.get("cancelled_by") or "",
                }
                for row in reservations
            ]
        ),
        "No reservations in this range.",
    )


def render_deleted_pledges_tab() -> None:
    st.markdown("### Deleted Pledges")
    search = st.text_input("Search deleted", placeholder="Workflow id, name, user, reason")
    rows = _rows_to_dicts(STORE.list_deleted_pledges(search=search))
    _table_or_info(
        pd.DataFrame(
            [
                {
                    "Workflow": row["workflow_id"],
                    "Deleted (UTC)": row["deleted_at_utc"],
                    "By": f"{row['deleted_by_user']}@{row['deleted_by_machine']}",
                    "Reason": row.get("deleted_reason") or "",
                    "Constituent": row.get("constituent_name") or row["constituent_id"],
                    "Amount": _money(row.get("amount_cents")),
                    "Sponsorship": f"{row['sponsored_date']} {row['day_part'] or ''}" if row.get("sponsored_date") else "-",
                    "Remote Gift": row.get("api_gift_id") or "-",
                    "Remote Delete": _yes_no(row.get("api_delete_succeeded")),
                    "Remote Error": row.get("api_delete_error_message") or "",
                }
                for row in rows
            ]
        ),
        "No pledges have been deleted.",
    )


def render_outbound_tab() -> None:
    st.markdown("### Outbound Queue")
    counts = QUEUE.status_counts()
    columns = st.columns(len(counts))
    for column, (status, total) in zip(columns, counts.items()):
        with column:
            _render_metric_card(status, str(total), "transactions")

    status = st.selectbox("Status filter", ["Any"] + [item.value for item in TransactionStatus])
    rows = _rows_to_dicts(QUEUE.list_recent(take=200, status=None if status == "Any" else status))
    _table_or_info(
        pd.DataFrame(
            [
                {
                    "ID": row["id"],
                    "Workflow": row["workflow_id"],
                    "Status": row["transaction_status"],
                    "Enqueued (local)": f"{row['enqueued_at_local']} {row['enqueued_local_tz']}",
                    "Constituent": row["constituent_id"],
                    "Amount": _money(row["amount_cents"]),
                    "Fund": row["fund_id"],
                    "Attempts": row["processing_attempt_count"],
                    "Gift": row.get("processed_gift_id") or "-",
                    "Last Error": row.get("last_processing_error_message") or "",
                }
                for row in rows
            ]
        ),
        "The outbound queue is empty.",
    )


def main() -> None:
    st.set_page_config(
        page_title="Gift Workflow Ledger",
        page_icon=":ledger:",
        layout="wide",
    )
    configure_logging()
    STORE.init_db()
    _inject_styles()
    st.title("Gift Workflow Ledger")

    tabs = st.tabs(
        [
            "Home",
            "Local Transactions",
            "Sponsorship Calendar",
            "Deleted Pledges",
            "Outbound Queue",
        ]
    )

    with tabs[0]:
        render_home()
    with tabs[1]:
        render_local_transactions_tab()
    with tabs[2]:
        render_sponsorship_tab()
    with tabs[3]:
        render_deleted_pledges_tab()
    with tabs[4]:
        render_outbound_tab()


if __name__ == "__main__":
    main()
