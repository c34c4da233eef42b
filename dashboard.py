# dashboard.py: profit & loss view over the user's transactions

import streamlit as st
import plotly.express as px
import plotly.graph_objects as go
import pandas as pd


def _prep(records):
    """
    Builds the dashboard frame from transaction dicts as returned by
    fetch-user-transactions.
    """
    df = pd.DataFrame(records)
    if df.empty:
        return df

    df["Date"] = pd.to_datetime(df["date"])
    df["Month"] = df["Date"].dt.to_period("M").astype(str)
    df["Amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0)

    if "category" not in df.columns:
        df["Category"] = "Uncategorized"
    else:
        df["Category"] = df["category"].fillna("Uncategorized").replace("", "Uncategorized")

    return df


def profit_loss_monthly(df):
    """
    Profit (income) and loss (expenses, kept negative) per month.
    """
    if df.empty:
        return pd.DataFrame(columns=["Month", "Profit", "Loss", "Net"])

    monthly = df.groupby("Month")["Amount"].agg(
        Profit=lambda x: x[x > 0].sum(),
        Loss=lambda x: x[x < 0].sum(),
    ).reset_index()
    monthly["Net"] = monthly["Profit"] + monthly["Loss"]
    return monthly.sort_values("Month").reset_index(drop=True)


def profit_loss_chart(monthly):
    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=monthly["Month"], y=monthly["Profit"], name="Profit",
        fill="tozeroy", line=dict(color="#10B981", shape="spline"),
    ))
    fig.add_trace(go.Scatter(
        x=monthly["Month"], y=monthly["Loss"], name="Loss",
        fill="tozeroy", line=dict(color="#EF4444", shape="spline"),
    ))
    fig.update_layout(title="Profit & Loss", height=350, margin=dict(t=40, b=0, l=0, r=0))
    return fig


def cat_spend(df):
    """
    Donut chart of spending by category.
    """
    spend_df = df[df["Amount"] < 0].copy()
    spend_df["Amount"] = spend_df["Amount"].abs()
    by_cat = spend_df.groupby("Category")["Amount"].sum().reset_index()

    fig = px.pie(by_cat, values="Amount", names="Category", hole=0.4, title="Spending by Category")
    fig.update_traces(textposition="inside", textinfo="percent+label")
    return fig


def render_profit_loss(records):
    df = _prep(records)
    if df.empty:
        st.info("No transactions yet. Add one in the chat or link a bank.")
        return

    monthly = profit_loss_monthly(df)
    latest = monthly.iloc[-1]

    col1, col2, col3 = st.columns(3)
    col1.metric(f"💰 Profit ({latest['Month']})", f"${latest['Profit']:,.2f}")
    col2.metric(f"💸 Loss ({latest['Month']})", f"${abs(latest['Loss']):,.2f}")
    col3.metric("📈 Net", f"${latest['Net']:,.2f}")

    st.plotly_chart(profit_loss_chart(monthly), use_container_width=True)
    if (df["Amount"] < 0).any():
        st.plotly_chart(cat_spend(df), use_container_width=True)
