"""Configuration for the Raptor control panel"""
