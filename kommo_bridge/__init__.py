"""Kommo webhook bridge: normalizes CRM events, takes turns, answers through an assistant."""
