from src.server import initialize


def main() -> None:
    app = initialize()
    # stdio is the only supported transport
    app.run()


if __name__ == "__main__":  # pragma: no cover
    main()
