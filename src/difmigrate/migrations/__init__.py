"""Migrações SQL da aplicação Doing is Fun, distribuídas como dados do pacote."""
