from harvester_provider.db import engine, init_db


if __name__ == "__main__":
    init_db()
    print(f"schema ready on {engine.url.render_as_string(hide_password=True)}")
