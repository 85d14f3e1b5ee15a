# coding: utf-8
"""
impacthub/web.py
只读诊断看板：各通道待推送、最近评分、推送结果。

    streamlit run impacthub/web.py
"""
from __future__ import annotations

import datetime
import html
import os
import sqlite3
import time
from pathlib import Path

import pandas as pd
import pytz
import streamlit as st
from streamlit_autorefresh import st_autorefresh

ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.environ.get("IMPACTHUB_DB", ROOT / "intel.db"))
TZ_NAME = os.environ.get("IMPACTHUB_TZ", "Asia/Shanghai")

st.set_page_config(page_title="Impact Hub - 看板", page_icon="🛰️", layout="wide")

st.markdown("""
<style>
.ih-table{width:100%;border-collapse:collapse;font-size:14px}
.ih-table th,.ih-table td{border-bottom:1px solid rgba(255,255,255,.08);padding:6px 10px;vertical-align:top}
.ih-link{color:inherit;text-decoration:none}
.ih-link:hover{text-decoration:underline}
.nowrap{white-space:nowrap}
.score-badge{padding:2px 8px;border-radius:999px;background:rgba(253,126,20,.15);border:1px solid rgba(253,126,20,.35)}
.small{font-size:12px;color:#a0a0a0}
</style>
""", unsafe_allow_html=True)

# ========== 顶栏 ==========
left, mid, right = st.columns([0.3, 0.3, 0.4], gap="small")
with left:
    window_hours = st.slider("回看窗口（小时）", 1, 72, 24, 1)
with mid:
    interval = st.select_slider("刷新间隔（秒）", options=[10, 15, 30, 60], value=15)
with right:
    query = st.text_input("搜索", key="q", placeholder="标题 / 来源 / symbols",
                          label_visibility="collapsed")
st_autorefresh(interval=interval * 1000, key="auto-rerun")


# ========== DB 工具 ==========
def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_ms_to_local_str(ms, tz_name: str) -> str:
    if ms is None or pd.isna(ms):
        return "-"
    tz = pytz.timezone(tz_name)
    dt = datetime.datetime.fromtimestamp(int(ms) / 1000.0, tz=pytz.UTC)
    return dt.astimezone(tz).strftime("%m-%d %H:%M:%S")


def _connect() -> sqlite3.Connection:
    if not DB_PATH.exists():
        raise FileNotFoundError(f"数据库不存在: {DB_PATH}")
    # 只读打开，不和服务争写锁
    conn = sqlite3.connect(f"file:{DB_PATH}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


_LATEST = """
JOIN news_scores ns ON ns.news_item_id = ni.id
 AND ns.version = (SELECT MAX(version) FROM news_scores WHERE news_item_id = ni.id)
"""


def _fetch_pending(conn, channel: str, query: str) -> pd.DataFrame:
    sql = f"""
    SELECT ni.id, ni.published_at, ni.source, ni.title, ni.url, ni.symbols,
           ns.composite_score AS score, nrs.fade_level, nrs.upgrade_flag
      FROM news_items ni
      JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
      {_LATEST}
     WHERE nrs.channel = ? AND nrs.status = 'pending'
    """
    params = [channel]
    if query.strip():
        like = f"%{query.strip()}%"
        sql += " AND (ni.title LIKE ? OR ni.source LIKE ? OR ni.symbols LIKE ?)"
        params += [like, like, like]
    sql += " ORDER BY ns.composite_score DESC, ni.published_at DESC LIMIT 100"
    return pd.read_sql_query(sql, conn, params=params)


def _fetch_recent(conn, since_ms: int, query: str) -> pd.DataFrame:
    sql = f"""
    SELECT ni.id, ni.published_at, ni.source, ni.title, ni.url, ni.symbols,
           ns.composite_score AS score, ns.version,
           ns.freshness, ns.source_quality, ns.relevance, ns.impact,
           ns.novelty, ns.corroboration, ns.attention,
           COALESCE(nrs.channel, '-') AS channel, nrs.status
      FROM news_items ni
      JOIN news_routing_state nrs ON nrs.news_item_id = ni.id
      {_LATEST}
     WHERE ni.fetched_at >= ?
    """
    params = [since_ms]
    if query.strip():
        like = f"%{query.strip()}%"
        sql += " AND (ni.title LIKE ? OR ni.source LIKE ? OR ni.symbols LIKE ?)"
        params += [like, like, like]
    sql += " ORDER BY ni.fetched_at DESC LIMIT 300"
    return pd.read_sql_query(sql, conn, params=params)


def _fetch_push_stats(conn, since_ms: int) -> pd.DataFrame:
    return pd.read_sql_query(
        """
        SELECT channel, outcome, COUNT(*) AS count
          FROM news_push_history WHERE sent_at >= ?
         GROUP BY channel, outcome ORDER BY channel, outcome
        """,
        conn, params=[since_ms],
    )


def render_table_html(df: pd.DataFrame, tz_name: str) -> str:
    cols = ["发布", "来源", "分数", "标题", "symbols"]
    rows = []
    for _, r in df.iterrows():
        title = html.escape(str(r.get("title", "") or ""))
        link = str(r.get("url", "") or "")
        if link.startswith("http"):
            title = f"<a class='ih-link' href='{html.escape(link)}' target='_blank' rel='noopener noreferrer'>{title}</a>"
        if r.get("upgrade_flag"):
            title += " ⬆"
        rows.append(
            "<tr>"
            f"<td class='nowrap small'>{_utc_ms_to_local_str(r['published_at'], tz_name)}</td>"
            f"<td>{html.escape(str(r.get('source', '')))}</td>"
            f"<td><span class='score-badge'>{float(r.get('score') or 0):.2f}</span></td>"
            f"<td>{title}</td>"
            f"<td class='small'>{html.escape(str(r.get('symbols') or ''))}</td>"
            "</tr>"
        )
    thead = "<tr>" + "".join(f"<th>{c}</th>" for c in cols) + "</tr>"
    return f"<table class='ih-table'><thead>{thead}</thead><tbody>{''.join(rows)}</tbody></table>"


# ========== 读库 & 展示 ==========
since_ms = _now_ms() - window_hours * 3600 * 1000
try:
    conn = _connect()
except (FileNotFoundError, sqlite3.Error) as e:
    st.error(f"无法连接数据库：{DB_PATH}\n{e}")
    st.stop()

try:
    tabs = st.tabs(["⚡ fastlane", "📰 digest_2h", "🗞 digest_4h"])
    for tab, channel in zip(tabs, ["fastlane", "digest_2h", "digest_4h"]):
        with tab:
            df = _fetch_pending(conn, channel, query)
            if df.empty:
                st.info("该通道暂无待推送条目。")
            else:
                st.markdown(render_table_html(df, TZ_NAME), unsafe_allow_html=True)

    st.markdown("---")
    left_main, right_main = st.columns([0.7, 0.3])

    with left_main:
        st.subheader("📌 最近入库（最新评分）")
        df_recent = _fetch_recent(conn, since_ms, query)
        if df_recent.empty:
            st.warning("窗口内没有条目。")
        else:
            df_recent["published_at"] = df_recent["published_at"].map(lambda v: _utc_ms_to_local_str(v, TZ_NAME))
            st.dataframe(df_recent.drop(columns=["url"]), use_container_width=True, hide_index=True)

    with right_main:
        st.subheader("📮 推送结果")
        st.dataframe(_fetch_push_stats(conn, since_ms), use_container_width=True, hide_index=True)
finally:
    conn.close()
