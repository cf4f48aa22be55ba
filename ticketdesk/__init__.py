# Ticket desk backend
