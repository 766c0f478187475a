from clusterdeck.cli.app import app

app()
