from stockaudit import create_app

app = create_app()
