from chatcoord.cli import cli


def main():
    """Main entry point for chatcoord."""
    cli()


if __name__ == '__main__':
    main()
