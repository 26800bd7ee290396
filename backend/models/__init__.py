"""Pydantic request models"""
