def make_ics(*event_bodies, extra=()):
    lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//Example Corp//Export//EN']
    lines.extend(extra)
    for body in event_bodies:
        lines.append('BEGIN:VEVENT')
        lines.extend(body)
        lines.append('END:VEVENT')
    lines.append('END:VCALENDAR')
    return ('\r\n'.join(lines) + '\r\n').encode('utf-8')
