"""
Task records and storage.

Components:
- task_models.py: TaskRecord, TaskStatus, TaskPriority, attribute (de)serialization
- task_store.py: SQLite block store + async RecordSource adapter
"""
