from triage.models import db_connect, create_tables


def init_db(engine=None):
    """
    Explicitly creates the database tables.
    Run this once when setting up the system (or `python -m triage.agents init-db`).
    """
    print("Connecting to database...")
    engine = engine or db_connect()

    print("Creating tables: issues, feedback_log, escalation_drafts, weekly_summaries, embedding_queue...")
    create_tables(engine)

    print("Database initialization complete.")
    return engine


if __name__ == "__main__":
    init_db()
