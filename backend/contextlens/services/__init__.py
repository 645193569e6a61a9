"""
Services module - session orchestration, persistence, metrics and streaming STT
"""
