from app.tenantdesk import create_app

app = create_app()
